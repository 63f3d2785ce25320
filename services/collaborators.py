"""Interfaces for the work a course update delegates to other subsystems.

Upload import, category refresh, article status, pageviews and the
structural-completeness report live outside the timeslice engine. The
orchestrator only sees these protocols; the no-op implementations are used
wherever a deployment does not provide its own.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from core import get_logger
from models import Article, Course

logger = get_logger(__name__)


class UploadImporter(Protocol):
    async def import_uploads(self, db: AsyncSession, course: Course) -> None: ...


class CategoryRefresher(Protocol):
    async def refresh_categories(self, db: AsyncSession, course: Course) -> None: ...


class ArticleStatusManager(Protocol):
    async def update_article_status(
        self, db: AsyncSession, course: Course, articles: Sequence[Article]
    ) -> None: ...


class PageviewImporter(Protocol):
    async def update_average_views(
        self, db: AsyncSession, course: Course, articles: Sequence[Article]
    ) -> None: ...


class StructuralCompletenessCache(Protocol):
    async def invalidate(self, course: Course) -> None: ...


class NoopCollaborator:
    """Stands in for every collaborator and does nothing."""

    async def import_uploads(self, db: AsyncSession, course: Course) -> None:
        return None

    async def refresh_categories(self, db: AsyncSession, course: Course) -> None:
        return None

    async def update_article_status(
        self, db: AsyncSession, course: Course, articles: Sequence[Article]
    ) -> None:
        return None

    async def update_average_views(
        self, db: AsyncSession, course: Course, articles: Sequence[Article]
    ) -> None:
        return None

    async def invalidate(self, course: Course) -> None:
        return None


class CsvStructuralCompletenessCache:
    """Structural-completeness report cached as one CSV file per course.

    Invalidating deletes the file; the report is regenerated on next request.
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def path_for(self, course: Course) -> Path:
        return self.directory / f"{course.slug.replace('/', '_')}-structural_completeness.csv"

    async def invalidate(self, course: Course) -> None:
        path = self.path_for(course)
        if path.exists():
            path.unlink()
            logger.info("structural_completeness.invalidated", course_id=course.id)


@dataclass
class UpdateCollaborators:
    """Collaborators for one orchestrator, defaulting to no-ops."""

    uploads: UploadImporter = field(default_factory=NoopCollaborator)
    categories: CategoryRefresher = field(default_factory=NoopCollaborator)
    article_status: ArticleStatusManager = field(default_factory=NoopCollaborator)
    pageviews: PageviewImporter = field(default_factory=NoopCollaborator)
    structural_completeness: StructuralCompletenessCache = field(
        default_factory=NoopCollaborator
    )
