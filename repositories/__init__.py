"""Repository layer for database operations.

Repositories encapsulate all database queries, keeping services focused on
grid and aggregation rules. This separation provides:
- Single source of truth for database operations
- Easier testing (repositories can be mocked)
- Reusable queries across the manager, fetcher and aggregator
"""

from repositories.article_repository import ArticleCourseRepository, ArticleRepository
from repositories.course_repository import CourseRepository, WikiRepository
from repositories.timeslice_repository import (
    ArticleCourseTimesliceRepository,
    CourseUserWikiTimesliceRepository,
    CourseWikiTimesliceRepository,
)
from repositories.update_run_repository import UpdateRunRepository
from repositories.utils import log_slow_query

__all__ = [
    "ArticleCourseRepository",
    "ArticleCourseTimesliceRepository",
    "ArticleRepository",
    "CourseRepository",
    "CourseUserWikiTimesliceRepository",
    "CourseWikiTimesliceRepository",
    "UpdateRunRepository",
    "WikiRepository",
    "log_slow_query",
]
