"""Repository for articles and their course associations."""

from collections.abc import Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Article, ArticleCourse, Namespace
from repositories.utils import insert_ignore_conflict, log_slow_query


class ArticleRepository:
    """Repository for Article database operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_create(
        self,
        wiki_id: int,
        mw_page_id: int,
        title: str,
        namespace: int = Namespace.MAINSPACE,
    ) -> Article:
        """Get an article by wiki page id, creating it on first sight.

        Articles are shared between courses, so creation uses
        INSERT ... ON CONFLICT DO NOTHING.
        """
        article = await insert_ignore_conflict(
            self.db,
            Article,
            {
                "wiki_id": wiki_id,
                "mw_page_id": mw_page_id,
                "title": title,
                "namespace": namespace,
            },
            ["wiki_id", "mw_page_id"],
        )
        # Page moves keep the page id
        if title and article.title != title:
            article.title = title
            article.namespace = namespace
        return article

    async def get_for_course(self, course_id: int) -> Sequence[Article]:
        result = await self.db.execute(
            select(Article)
            .join(ArticleCourse, ArticleCourse.article_id == Article.id)
            .where(ArticleCourse.course_id == course_id)
            .order_by(Article.id)
        )
        return result.scalars().all()


class ArticleCourseRepository:
    """Repository for ArticleCourse database operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_create(
        self, article_id: int, course_id: int, new_article: bool = False
    ) -> ArticleCourse:
        article_course = await insert_ignore_conflict(
            self.db,
            ArticleCourse,
            {
                "article_id": article_id,
                "course_id": course_id,
                "new_article": new_article,
            },
            ["article_id", "course_id"],
        )
        if new_article and not article_course.new_article:
            article_course.new_article = True
        return article_course

    async def get_for_course(self, course_id: int) -> Sequence[ArticleCourse]:
        result = await self.db.execute(
            select(ArticleCourse)
            .where(ArticleCourse.course_id == course_id)
            .order_by(ArticleCourse.id)
        )
        return result.scalars().all()

    async def count_for_course(self, course_id: int) -> int:
        result = await self.db.execute(
            select(func.count(ArticleCourse.id)).where(
                ArticleCourse.course_id == course_id
            )
        )
        return result.scalar_one()

    async def get_untracked_article_ids(self, course_id: int) -> set[int]:
        """Articles explicitly excluded from the course's statistics."""
        result = await self.db.execute(
            select(ArticleCourse.article_id).where(
                ArticleCourse.course_id == course_id,
                ArticleCourse.tracked.is_(False),
            )
        )
        return set(result.scalars().all())

    @log_slow_query("delete_article_courses_for_wiki")
    async def delete_for_wiki(self, course_id: int, wiki_id: int) -> int:
        """Delete the course's associations with articles on a wiki."""
        article_ids = select(Article.id).where(Article.wiki_id == wiki_id)
        result = await self.db.execute(
            delete(ArticleCourse).where(
                ArticleCourse.course_id == course_id,
                ArticleCourse.article_id.in_(article_ids),
            )
        )
        return result.rowcount
