"""Repositories for the three timeslice grids.

- CourseWikiTimeslice: the (course, wiki) window grid and its fetch cursors
- ArticleCourseTimeslice: cached per-article window statistics
- CourseUserWikiTimeslice: cached per-user window statistics

Window shape is only changed through the timeslice manager; cached values and
cursors only through the aggregation stage.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    Article,
    ArticleCourseTimeslice,
    CourseUserWikiTimeslice,
    CourseWikiTimeslice,
)
from repositories.utils import log_slow_query
from services.window_grid import Window


class CourseWikiTimesliceRepository:
    """Repository for the (course, wiki) window grid."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_grid(self, course_id: int, wiki_id: int) -> list[CourseWikiTimeslice]:
        """All windows for a course and wiki, ordered by start."""
        result = await self.db.execute(
            select(CourseWikiTimeslice)
            .where(
                CourseWikiTimeslice.course_id == course_id,
                CourseWikiTimeslice.wiki_id == wiki_id,
            )
            .order_by(CourseWikiTimeslice.start)
        )
        return list(result.scalars().all())

    async def get_for_course(self, course_id: int) -> Sequence[CourseWikiTimeslice]:
        result = await self.db.execute(
            select(CourseWikiTimeslice)
            .where(CourseWikiTimeslice.course_id == course_id)
            .order_by(CourseWikiTimeslice.wiki_id, CourseWikiTimeslice.start)
        )
        return result.scalars().all()

    async def count_for_course(self, course_id: int) -> int:
        result = await self.db.execute(
            select(func.count(CourseWikiTimeslice.id)).where(
                CourseWikiTimeslice.course_id == course_id
            )
        )
        return result.scalar_one()

    async def get_wiki_ids(self, course_id: int) -> set[int]:
        """Wikis that currently have a grid for the course."""
        result = await self.db.execute(
            select(CourseWikiTimeslice.wiki_id)
            .where(CourseWikiTimeslice.course_id == course_id)
            .distinct()
        )
        return set(result.scalars().all())

    async def create_windows(
        self,
        course_id: int,
        wiki_id: int,
        windows: Iterable[Window],
        needs_update: bool = True,
    ) -> list[CourseWikiTimeslice]:
        """Insert grid windows. New windows start without a cursor."""
        timeslices = [
            CourseWikiTimeslice(
                course_id=course_id,
                wiki_id=wiki_id,
                start=window.start,
                end=window.end,
                needs_update=needs_update,
            )
            for window in windows
        ]
        self.db.add_all(timeslices)
        await self.db.flush()
        return timeslices

    async def delete_for_wiki(self, course_id: int, wiki_id: int) -> int:
        """Delete the whole grid for a wiki. Returns count deleted."""
        result = await self.db.execute(
            delete(CourseWikiTimeslice).where(
                CourseWikiTimeslice.course_id == course_id,
                CourseWikiTimeslice.wiki_id == wiki_id,
            )
        )
        return result.rowcount

    async def delete_by_ids(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        result = await self.db.execute(
            delete(CourseWikiTimeslice).where(CourseWikiTimeslice.id.in_(ids))
        )
        return result.rowcount

    async def get_latest_cursor(
        self, course_id: int, wiki_id: int
    ) -> datetime | None:
        """The ingestion point: most recent revision folded into the grid."""
        result = await self.db.execute(
            select(func.max(CourseWikiTimeslice.last_mw_rev_datetime)).where(
                CourseWikiTimeslice.course_id == course_id,
                CourseWikiTimeslice.wiki_id == wiki_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_due(
        self, course_id: int, wiki_id: int, now: datetime
    ) -> list[CourseWikiTimeslice]:
        """Windows that need fetching: started, and flagged or past the cursor.

        Windows entirely before the ingestion point were already fetched
        through their end, unless a failed fetch flagged them.
        """
        latest_cursor = await self.get_latest_cursor(course_id, wiki_id)
        stmt = select(CourseWikiTimeslice).where(
            CourseWikiTimeslice.course_id == course_id,
            CourseWikiTimeslice.wiki_id == wiki_id,
            CourseWikiTimeslice.start <= now,
        )
        if latest_cursor is not None:
            stmt = stmt.where(
                CourseWikiTimeslice.needs_update.is_(True)
                | (CourseWikiTimeslice.end > latest_cursor)
            )
        result = await self.db.execute(stmt.order_by(CourseWikiTimeslice.start))
        return list(result.scalars().all())


class ArticleCourseTimesliceRepository:
    """Repository for per-article window caches."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_build(
        self, article_id: int, course_id: int, window: Window
    ) -> ArticleCourseTimeslice:
        """Find the row aligned to ``window`` or add a new empty one."""
        result = await self.db.execute(
            select(ArticleCourseTimeslice).where(
                ArticleCourseTimeslice.article_id == article_id,
                ArticleCourseTimeslice.course_id == course_id,
                ArticleCourseTimeslice.start == window.start,
            )
        )
        timeslice = result.scalar_one_or_none()
        if timeslice is None:
            timeslice = ArticleCourseTimeslice(
                article_id=article_id,
                course_id=course_id,
                start=window.start,
                end=window.end,
                character_sum=0,
                references_count=0,
                revision_count=0,
                user_ids=[],
                new_article=False,
                tracked=True,
            )
            self.db.add(timeslice)
        return timeslice

    async def get_for_course(self, course_id: int) -> Sequence[ArticleCourseTimeslice]:
        result = await self.db.execute(
            select(ArticleCourseTimeslice)
            .where(ArticleCourseTimeslice.course_id == course_id)
            .order_by(ArticleCourseTimeslice.article_id, ArticleCourseTimeslice.start)
        )
        return result.scalars().all()

    async def get_for_course_wiki(
        self, course_id: int, wiki_id: int
    ) -> Sequence[ArticleCourseTimeslice]:
        result = await self.db.execute(
            select(ArticleCourseTimeslice)
            .join(Article, Article.id == ArticleCourseTimeslice.article_id)
            .where(
                ArticleCourseTimeslice.course_id == course_id,
                Article.wiki_id == wiki_id,
            )
            .order_by(ArticleCourseTimeslice.start)
        )
        return result.scalars().all()

    async def count_for_course(self, course_id: int) -> int:
        result = await self.db.execute(
            select(func.count(ArticleCourseTimeslice.id)).where(
                ArticleCourseTimeslice.course_id == course_id
            )
        )
        return result.scalar_one()

    @log_slow_query("delete_article_course_timeslices_for_wiki")
    async def delete_for_wiki(self, course_id: int, wiki_id: int) -> int:
        article_ids = select(Article.id).where(Article.wiki_id == wiki_id)
        result = await self.db.execute(
            delete(ArticleCourseTimeslice).where(
                ArticleCourseTimeslice.course_id == course_id,
                ArticleCourseTimeslice.article_id.in_(article_ids),
            )
        )
        return result.rowcount

    @log_slow_query("delete_misaligned_article_course_timeslices")
    async def delete_misaligned(
        self, course_id: int, wiki_id: int, grid: Iterable[Window]
    ) -> int:
        """Delete rows on this wiki whose range matches no grid window."""
        aligned = set(grid)
        stale_ids = [
            timeslice.id
            for timeslice in await self.get_for_course_wiki(course_id, wiki_id)
            if Window(timeslice.start, timeslice.end) not in aligned
        ]
        if not stale_ids:
            return 0
        result = await self.db.execute(
            delete(ArticleCourseTimeslice).where(
                ArticleCourseTimeslice.id.in_(stale_ids)
            )
        )
        return result.rowcount


class CourseUserWikiTimesliceRepository:
    """Repository for per-user window caches."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_build(
        self, course_id: int, user_id: int, wiki_id: int, window: Window
    ) -> CourseUserWikiTimeslice:
        result = await self.db.execute(
            select(CourseUserWikiTimeslice).where(
                CourseUserWikiTimeslice.course_id == course_id,
                CourseUserWikiTimeslice.user_id == user_id,
                CourseUserWikiTimeslice.wiki_id == wiki_id,
                CourseUserWikiTimeslice.start == window.start,
            )
        )
        timeslice = result.scalar_one_or_none()
        if timeslice is None:
            timeslice = CourseUserWikiTimeslice(
                course_id=course_id,
                user_id=user_id,
                wiki_id=wiki_id,
                start=window.start,
                end=window.end,
                character_sum_ms=0,
                character_sum_us=0,
                character_sum_draft=0,
                references_count=0,
                revision_count=0,
            )
            self.db.add(timeslice)
        return timeslice

    async def get_for_course(
        self, course_id: int
    ) -> Sequence[CourseUserWikiTimeslice]:
        result = await self.db.execute(
            select(CourseUserWikiTimeslice)
            .where(CourseUserWikiTimeslice.course_id == course_id)
            .order_by(CourseUserWikiTimeslice.user_id, CourseUserWikiTimeslice.start)
        )
        return result.scalars().all()

    async def count_for_course(self, course_id: int) -> int:
        result = await self.db.execute(
            select(func.count(CourseUserWikiTimeslice.id)).where(
                CourseUserWikiTimeslice.course_id == course_id
            )
        )
        return result.scalar_one()

    async def delete_for_wiki(self, course_id: int, wiki_id: int) -> int:
        result = await self.db.execute(
            delete(CourseUserWikiTimeslice).where(
                CourseUserWikiTimeslice.course_id == course_id,
                CourseUserWikiTimeslice.wiki_id == wiki_id,
            )
        )
        return result.rowcount

    @log_slow_query("delete_misaligned_course_user_wiki_timeslices")
    async def delete_misaligned(
        self, course_id: int, wiki_id: int, grid: Iterable[Window]
    ) -> int:
        """Delete rows on this wiki whose range matches no grid window."""
        aligned = set(grid)
        result = await self.db.execute(
            select(CourseUserWikiTimeslice).where(
                CourseUserWikiTimeslice.course_id == course_id,
                CourseUserWikiTimeslice.wiki_id == wiki_id,
            )
        )
        stale_ids = [
            timeslice.id
            for timeslice in result.scalars().all()
            if Window(timeslice.start, timeslice.end) not in aligned
        ]
        if not stale_ids:
            return 0
        result = await self.db.execute(
            delete(CourseUserWikiTimeslice).where(
                CourseUserWikiTimeslice.id.in_(stale_ids)
            )
        )
        return result.rowcount
