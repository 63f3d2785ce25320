"""Repository for courses, their tracked wikis and enrolled users."""

from collections.abc import Sequence
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Course, CourseRole, CourseUser, CourseWiki, User, Wiki
from repositories.utils import insert_ignore_conflict


class CourseRepository:
    """Repository for Course database operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, course_id: int) -> Course | None:
        result = await self.db.execute(select(Course).where(Course.id == course_id))
        return result.scalar_one_or_none()

    async def get_by_slug(self, slug: str) -> Course | None:
        result = await self.db.execute(select(Course).where(Course.slug == slug))
        return result.scalar_one_or_none()

    async def list_current(self, now: datetime) -> Sequence[Course]:
        """Courses that have started, or that were explicitly flagged for update."""
        result = await self.db.execute(
            select(Course)
            .where((Course.start <= now) | Course.needs_update.is_(True))
            .order_by(Course.id)
        )
        return result.scalars().all()

    async def get_tracked_wikis(self, course_id: int) -> list[Wiki]:
        """Wikis currently tracked by the course, ordered by id."""
        result = await self.db.execute(
            select(Wiki)
            .join(CourseWiki, CourseWiki.wiki_id == Wiki.id)
            .where(CourseWiki.course_id == course_id)
            .order_by(Wiki.id)
        )
        return list(result.scalars().all())

    async def add_wiki(self, course_id: int, wiki_id: int) -> CourseWiki:
        return await insert_ignore_conflict(
            self.db,
            CourseWiki,
            {"course_id": course_id, "wiki_id": wiki_id},
            ["course_id", "wiki_id"],
        )

    async def remove_wiki(self, course_id: int, wiki_id: int) -> int:
        """Stop tracking a wiki. Returns count deleted.

        Timeslice cleanup happens on the next reconciliation.
        """
        result = await self.db.execute(
            delete(CourseWiki).where(
                CourseWiki.course_id == course_id, CourseWiki.wiki_id == wiki_id
            )
        )
        return result.rowcount

    async def get_students(self, course_id: int) -> dict[str, int]:
        """Map of username -> user id for the course's students."""
        result = await self.db.execute(
            select(User.username, User.id)
            .join(CourseUser, CourseUser.user_id == User.id)
            .where(
                CourseUser.course_id == course_id,
                CourseUser.role == CourseRole.STUDENT,
            )
        )
        return {username: user_id for username, user_id in result.all()}

    async def get_course_users(self, course_id: int) -> Sequence[CourseUser]:
        result = await self.db.execute(
            select(CourseUser)
            .where(
                CourseUser.course_id == course_id,
                CourseUser.role == CourseRole.STUDENT,
            )
            .order_by(CourseUser.id)
        )
        return result.scalars().unique().all()


class WikiRepository:
    """Repository for Wiki database operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, wiki_id: int) -> Wiki | None:
        result = await self.db.execute(select(Wiki).where(Wiki.id == wiki_id))
        return result.scalar_one_or_none()

    async def get_or_create(self, project: str, language: str | None = None) -> Wiki:
        """Get a wiki by project/language, creating it if missing.

        Language-less wikis are looked up with IS NULL, since NULLs never
        collide on the unique constraint.
        """
        stmt = select(Wiki).where(Wiki.project == project)
        if language is None:
            stmt = stmt.where(Wiki.language.is_(None))
        else:
            stmt = stmt.where(Wiki.language == language)
        result = await self.db.execute(stmt)
        wiki = result.scalar_one_or_none()
        if wiki is not None:
            return wiki

        wiki = Wiki(project=project, language=language)
        self.db.add(wiki)
        await self.db.flush()
        return wiki
