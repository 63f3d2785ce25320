"""Scheduled update cycle for all current courses.

Courses are sorted into short, medium and long queues by how long their recent
updates took, and run shortest first. Each course gets its own session; a
semaphore bounds how many run at once.
"""

import asyncio
from collections.abc import Sequence
from enum import StrEnum

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core import get_logger
from core.config import Settings, get_settings
from core.database import session_scope
from models import utcnow
from repositories.course_repository import CourseRepository
from repositories.update_run_repository import UpdateRunRepository
from schemas import UpdateRunSummary
from services.collaborators import UpdateCollaborators
from services.revision_scorer import RevisionScorer
from services.timeslice_manager import TimesliceConfigurationError
from services.update_orchestrator import UpdateCourseStats

logger = get_logger(__name__)


class CourseNotFoundError(Exception):
    """Raised when a course id does not exist."""

    def __init__(self, course_id: int) -> None:
        self.course_id = course_id
        super().__init__(f"Course not found: {course_id}")


class UpdateQueue(StrEnum):
    SHORT = "short_update"
    MEDIUM = "medium_update"
    LONG = "long_update"


class CourseQueueSorter:
    """Assigns courses to update queues from their longest recent run."""

    MEDIUM_UPDATE_SECONDS = 120
    LONG_UPDATE_SECONDS = 900

    def __init__(self, db: AsyncSession):
        self.update_runs = UpdateRunRepository(db)

    @classmethod
    def queue_for_duration(cls, longest_update_seconds: float | None) -> UpdateQueue:
        # Courses that never ran are assumed quick
        if longest_update_seconds is None:
            return UpdateQueue.SHORT
        if longest_update_seconds >= cls.LONG_UPDATE_SECONDS:
            return UpdateQueue.LONG
        if longest_update_seconds >= cls.MEDIUM_UPDATE_SECONDS:
            return UpdateQueue.MEDIUM
        return UpdateQueue.SHORT

    async def queue_for(self, course_id: int) -> UpdateQueue:
        return self.queue_for_duration(
            await self.update_runs.longest_update_time(course_id)
        )

    async def order(self, course_ids: Sequence[int]) -> list[int]:
        """Course ids ordered short queue first, keeping id order within a queue."""
        rank = {UpdateQueue.SHORT: 0, UpdateQueue.MEDIUM: 1, UpdateQueue.LONG: 2}
        queues = {course_id: await self.queue_for(course_id) for course_id in course_ids}
        return sorted(course_ids, key=lambda course_id: (rank[queues[course_id]], course_id))


async def run_course_update(
    session_maker: async_sessionmaker[AsyncSession],
    course_id: int,
    *,
    collaborators: UpdateCollaborators | None = None,
    scorer: RevisionScorer | None = None,
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> UpdateRunSummary:
    """Run one course update in its own session.

    Raises:
        CourseNotFoundError: If the course does not exist.
        TimesliceConfigurationError: If the course's grid cannot be built.
    """
    async with session_scope(session_maker) as db:
        course = await CourseRepository(db).get_by_id(course_id)
        if course is None:
            raise CourseNotFoundError(course_id)
        return await UpdateCourseStats(
            db,
            course,
            collaborators=collaborators,
            scorer=scorer,
            settings=settings,
            client=client,
        ).run()


async def run_update_cycle(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    collaborators: UpdateCollaborators | None = None,
    scorer: RevisionScorer | None = None,
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[UpdateRunSummary]:
    """Update every current course, shortest queue first.

    Courses with invalid timeslice configuration are logged and skipped.
    """
    settings = settings or get_settings()

    async with session_maker() as db:
        courses = await CourseRepository(db).list_current(utcnow())
        course_ids = await CourseQueueSorter(db).order([course.id for course in courses])

    semaphore = asyncio.Semaphore(settings.course_concurrency)

    async def update(course_id: int) -> UpdateRunSummary | None:
        async with semaphore:
            try:
                return await run_course_update(
                    session_maker,
                    course_id,
                    collaborators=collaborators,
                    scorer=scorer,
                    settings=settings,
                    client=client,
                )
            except TimesliceConfigurationError as e:
                logger.error("update_cycle.course_failed", course_id=course_id, error=str(e))
                return None

    logger.info("update_cycle.started", courses=len(course_ids))
    results = await asyncio.gather(*(update(course_id) for course_id in course_ids))
    summaries = [summary for summary in results if summary is not None]
    logger.info(
        "update_cycle.completed",
        courses=len(course_ids),
        succeeded=len(summaries),
        errors=sum(summary.error_count for summary in summaries),
    )
    return summaries
