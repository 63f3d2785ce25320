"""Repository for course update run logs."""

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import CourseUpdateRun


class UpdateRunRepository:
    """Repository for CourseUpdateRun database operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        course_id: int,
        *,
        started_at: datetime,
        ended_at: datetime | None,
        error_count: int,
        stage_times: dict[str, str],
        skipped_stages: list[str],
        failed: bool = False,
    ) -> CourseUpdateRun:
        run = CourseUpdateRun(
            course_id=course_id,
            started_at=started_at,
            ended_at=ended_at,
            error_count=error_count,
            stage_times=stage_times,
            skipped_stages=skipped_stages,
            failed=failed,
        )
        self.db.add(run)
        await self.db.flush()
        return run

    async def get_recent(self, course_id: int, limit: int = 10) -> Sequence[CourseUpdateRun]:
        """Most recent runs for a course, newest first."""
        result = await self.db.execute(
            select(CourseUpdateRun)
            .where(CourseUpdateRun.course_id == course_id)
            .order_by(CourseUpdateRun.started_at.desc(), CourseUpdateRun.id.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def longest_update_time(self, course_id: int, limit: int = 10) -> float | None:
        """Longest duration in seconds among recent completed runs."""
        durations = [
            run.duration_seconds
            for run in await self.get_recent(course_id, limit)
            if run.duration_seconds is not None
        ]
        return max(durations) if durations else None
