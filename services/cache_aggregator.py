"""Cache aggregation for course timeslices.

Two levels:
- ``apply_revisions`` folds a batch of fetched revisions into the cached
  statistics of the window they belong to (article, user and course-wiki)
- ``roll_up_course_cache`` recomputes the article-course, course-user and
  course totals from the window caches

Window folds are incremental and rely on the fetcher never returning a
revision twice. Rollups are full recomputes and can be re-run at any time.
"""

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from core import get_logger
from models import (
    ArticleCourseTimeslice,
    Course,
    CourseUserWikiTimeslice,
    CourseWikiTimeslice,
    Namespace,
    utcnow,
)
from repositories.article_repository import ArticleCourseRepository
from repositories.course_repository import CourseRepository
from repositories.timeslice_repository import (
    ArticleCourseTimesliceRepository,
    CourseUserWikiTimesliceRepository,
)
from schemas import Revision
from services.collaborators import NoopCollaborator, StructuralCompletenessCache
from services.window_grid import Window

logger = get_logger(__name__)


class AggregationError(Exception):
    """Raised when a batch cannot be folded into a window."""

    def __init__(self, course_id: int, window: Window, message: str) -> None:
        self.course_id = course_id
        self.window = window
        super().__init__(
            f"Cannot aggregate course {course_id} window "
            f"{window.start.isoformat()}: {message}"
        )


def characters_added(revision: Revision) -> int:
    """Characters a revision contributes: bytes added, never negative.

    Platform (system) edits contribute none.
    """
    if revision.system:
        return 0
    return max(revision.characters, 0)


def _merge_user_ids(existing: Iterable[int] | None, revisions: Iterable[Revision]) -> list[int]:
    # A new list so the JSON column is flagged dirty
    return sorted(set(existing or ()) | {rev.user_id for rev in revisions})


class CacheAggregator:
    """Folds revisions into window caches and rolls them up for a course."""

    def __init__(
        self,
        db: AsyncSession,
        course: Course,
        structural_completeness: StructuralCompletenessCache | None = None,
    ):
        self.db = db
        self.course = course
        self.structural_completeness = structural_completeness or NoopCollaborator()
        self.courses = CourseRepository(db)
        self.articles_courses = ArticleCourseRepository(db)
        self.article_course_timeslices = ArticleCourseTimesliceRepository(db)
        self.course_user_wiki_timeslices = CourseUserWikiTimesliceRepository(db)

    def _validate(
        self, window: Window, revisions_by_article: Mapping[int, Sequence[Revision]]
    ) -> None:
        for article_id, revisions in revisions_by_article.items():
            for rev in revisions:
                if not rev.username or rev.user_id is None:
                    raise AggregationError(
                        self.course.id, window, f"revision {rev.mw_rev_id} has no author"
                    )
                if rev.article_id != article_id:
                    raise AggregationError(
                        self.course.id,
                        window,
                        f"revision {rev.mw_rev_id} is not resolved to article {article_id}",
                    )
                if not window.contains(rev.date):
                    raise AggregationError(
                        self.course.id,
                        window,
                        f"revision {rev.mw_rev_id} at {rev.date.isoformat()} "
                        "is outside the window",
                    )

    async def apply_revisions(
        self,
        timeslice: CourseWikiTimeslice,
        revisions_by_article: Mapping[int, Sequence[Revision]],
    ) -> int:
        """Fold a window's revisions into its caches.

        The whole batch is checked before anything is written.

        Returns:
            Number of revisions folded.

        Raises:
            AggregationError: If a revision lacks an author, is unresolved, or
                falls outside the window.
        """
        window = Window(timeslice.start, timeslice.end)
        self._validate(window, revisions_by_article)

        all_revisions = [rev for revs in revisions_by_article.values() for rev in revs]
        if not all_revisions:
            return 0

        for article_id in sorted(revisions_by_article):
            revisions = revisions_by_article[article_id]
            if not revisions:
                continue
            article_slice = await self.article_course_timeslices.get_or_build(
                article_id, self.course.id, window
            )
            self._fold_article(article_slice, revisions)

        by_user: dict[int, list[Revision]] = defaultdict(list)
        for rev in all_revisions:
            by_user[rev.user_id].append(rev)
        for user_id in sorted(by_user):
            user_slice = await self.course_user_wiki_timeslices.get_or_build(
                self.course.id, user_id, timeslice.wiki_id, window
            )
            self._fold_user(user_slice, by_user[user_id])

        timeslice.revision_count = (timeslice.revision_count or 0) + len(all_revisions)
        timeslice.character_sum = (timeslice.character_sum or 0) + sum(
            characters_added(rev) for rev in all_revisions
        )
        timeslice.references_count = (timeslice.references_count or 0) + sum(
            rev.references for rev in all_revisions
        )

        await self.db.flush()
        logger.debug(
            "cache_aggregator.window_applied",
            course_id=self.course.id,
            wiki_id=timeslice.wiki_id,
            window_start=window.start.isoformat(),
            revisions=len(all_revisions),
            articles=len(revisions_by_article),
        )
        return len(all_revisions)

    @staticmethod
    def _fold_article(
        article_slice: ArticleCourseTimeslice, revisions: Sequence[Revision]
    ) -> None:
        article_slice.revision_count = (article_slice.revision_count or 0) + len(revisions)
        article_slice.character_sum = (article_slice.character_sum or 0) + sum(
            characters_added(rev) for rev in revisions
        )
        article_slice.references_count = (article_slice.references_count or 0) + sum(
            rev.references for rev in revisions
        )
        article_slice.user_ids = _merge_user_ids(article_slice.user_ids, revisions)
        article_slice.new_article = bool(article_slice.new_article) or any(
            rev.new_article for rev in revisions
        )

    @staticmethod
    def _fold_user(
        user_slice: CourseUserWikiTimeslice, revisions: Sequence[Revision]
    ) -> None:
        user_slice.revision_count = (user_slice.revision_count or 0) + len(revisions)
        user_slice.references_count = (user_slice.references_count or 0) + sum(
            rev.references for rev in revisions
        )
        for rev in revisions:
            characters = characters_added(rev)
            if rev.namespace == Namespace.MAINSPACE:
                user_slice.character_sum_ms = (user_slice.character_sum_ms or 0) + characters
            elif rev.namespace == Namespace.USER:
                user_slice.character_sum_us = (user_slice.character_sum_us or 0) + characters
            elif rev.namespace == Namespace.DRAFT:
                user_slice.character_sum_draft = (
                    user_slice.character_sum_draft or 0
                ) + characters

    # -------------------------------------------------------------------------
    # Rollup
    # -------------------------------------------------------------------------

    async def roll_up_course_cache(self) -> None:
        """Recompute article-course, course-user and course totals.

        Untracked articles keep their own totals but are left out of the
        course totals.
        """
        article_slices: dict[int, list[ArticleCourseTimeslice]] = defaultdict(list)
        for article_slice in await self.article_course_timeslices.get_for_course(
            self.course.id
        ):
            article_slices[article_slice.article_id].append(article_slice)

        articles_courses = await self.articles_courses.get_for_course(self.course.id)
        for article_course in articles_courses:
            slices = article_slices.get(article_course.article_id, [])
            article_course.revision_count = sum(s.revision_count for s in slices)
            article_course.character_sum = sum(s.character_sum for s in slices)
            article_course.references_count = sum(s.references_count for s in slices)
            article_course.user_ids = sorted(
                {user_id for s in slices for user_id in (s.user_ids or ())}
            )
            article_course.new_article = any(s.new_article for s in slices)

        user_slices: dict[int, list[CourseUserWikiTimeslice]] = defaultdict(list)
        for user_slice in await self.course_user_wiki_timeslices.get_for_course(
            self.course.id
        ):
            user_slices[user_slice.user_id].append(user_slice)

        course_users = await self.courses.get_course_users(self.course.id)
        for course_user in course_users:
            slices = user_slices.get(course_user.user_id, [])
            course_user.revision_count = sum(s.revision_count for s in slices)
            course_user.references_count = sum(s.references_count for s in slices)
            course_user.character_sum_ms = sum(s.character_sum_ms for s in slices)
            course_user.character_sum_us = sum(s.character_sum_us for s in slices)
            course_user.character_sum_draft = sum(s.character_sum_draft for s in slices)

        tracked = [ac for ac in articles_courses if ac.tracked]
        self.course.revision_count = sum(ac.revision_count for ac in tracked)
        self.course.character_sum = sum(ac.character_sum for ac in tracked)
        self.course.references_count = sum(ac.references_count for ac in tracked)
        self.course.article_count = sum(1 for ac in tracked if ac.revision_count > 0)
        self.course.new_article_count = sum(1 for ac in tracked if ac.new_article)
        self.course.user_count = sum(1 for cu in course_users if cu.revision_count > 0)
        self.course.cache_updated_at = utcnow()
        await self.db.flush()

        logger.info(
            "cache_aggregator.course_rolled_up",
            course_id=self.course.id,
            revisions=self.course.revision_count,
            characters=self.course.character_sum,
            articles=self.course.article_count,
            users=self.course.user_count,
        )
        await self.structural_completeness.invalidate(self.course)
