"""Course update orchestration.

One run updates one course through a fixed sequence of stages:

    start
    timeslices_reconciled      grids match dates, wikis and durations
    revisions_fetched          new revisions pulled for every due window
    uploads_imported
    categories_updated
    article_status_updated     skipped for slow courses (admission control)
    average_pageviews_updated
    course_cache_updated       windows folded, cursors advanced, totals rolled up
    done

Failures are isolated: a wiki or window that fails is counted and flagged for
the next run, and the run carries on. Every run ends with a CourseUpdateRun
row. Only invalid timeslice configuration is raised to the caller.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core import get_logger
from core.config import Settings, get_settings
from core.logger import bind_contextvars, unbind_contextvars
from models import Course, CourseWikiTimeslice, Wiki, utcnow
from repositories.article_repository import ArticleRepository
from repositories.course_repository import CourseRepository
from repositories.update_run_repository import UpdateRunRepository
from schemas import UpdateRunSummary
from services.cache_aggregator import AggregationError, CacheAggregator
from services.collaborators import UpdateCollaborators
from services.revision_fetcher import FetchResult, RevisionFetcher, RevisionFetchError
from services.revision_scorer import RevisionScorer, get_revision_scorer
from services.timeslice_manager import TimesliceConfigurationError, TimesliceManager
from services.window_grid import Window

logger = get_logger(__name__)

STAGES = (
    "start",
    "timeslices_reconciled",
    "revisions_fetched",
    "uploads_imported",
    "categories_updated",
    "article_status_updated",
    "average_pageviews_updated",
    "course_cache_updated",
    "done",
)


class UpdateErrorCounter:
    """Counts and logs the errors of one run."""

    def __init__(self) -> None:
        self.count = 0

    def record(self, error: BaseException, stage: str, **context) -> None:
        self.count += 1
        logger.error(
            "course_update.error",
            stage=stage,
            error=str(error),
            error_type=type(error).__name__,
            error_count=self.count,
            exc_info=error,
            **context,
        )


class UpdateStageLogger:
    """Records when each stage was entered.

    Courses flagged with ``debug_updates`` also get a warning-level event per
    stage carrying every stage time so far and the running error count.
    """

    def __init__(
        self,
        course: Course,
        errors: UpdateErrorCounter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.course = course
        self.errors = errors
        self.clock = clock
        self.stage_times: dict[str, str] = {}

    def log(self, stage: str) -> datetime:
        now = self.clock()
        self.stage_times[stage] = now.isoformat()
        if self.course.debug_updates:
            logger.warning(
                "course_update.stage",
                course=self.course.title,
                stage=stage,
                stage_times=dict(self.stage_times),
                error_count=self.errors.count,
            )
        else:
            logger.debug("course_update.stage", stage=stage)
        return now


@dataclass
class FetchedWindow:
    wiki: Wiki
    timeslice: CourseWikiTimeslice
    result: FetchResult


class UpdateCourseStats:
    """Runs every update stage for one course on one session."""

    def __init__(
        self,
        db: AsyncSession,
        course: Course,
        *,
        collaborators: UpdateCollaborators | None = None,
        scorer: RevisionScorer | None = None,
        errors: UpdateErrorCounter | None = None,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.course = course
        self.collaborators = collaborators or UpdateCollaborators()
        self.settings = settings or get_settings()
        self.errors = errors or UpdateErrorCounter()
        self.clock = clock
        self.stages = UpdateStageLogger(course, self.errors, clock)
        self.skipped_stages: list[str] = []

        self.courses = CourseRepository(db)
        self.articles = ArticleRepository(db)
        self.update_runs = UpdateRunRepository(db)
        self.manager = TimesliceManager(db, course)
        self.fetcher = RevisionFetcher(
            db,
            course,
            scorer=scorer if scorer is not None else get_revision_scorer(),
            client=client,
        )
        self.aggregator = CacheAggregator(
            db, course, self.collaborators.structural_completeness
        )

    async def run(self) -> UpdateRunSummary:
        """Run all stages and record the run.

        Raises:
            TimesliceConfigurationError: If the course's grid cannot be built.
                The failed run is recorded first.
        """
        bind_contextvars(course_id=self.course.id)
        try:
            started_at = self.stages.log("start")
            try:
                revision_count = await self._run_stages()
            except TimesliceConfigurationError as e:
                self.errors.record(e, "timeslices_reconciled")
                await self._finish(started_at, failed=True, revision_count=0)
                # Keep the failed run even though the caller's scope rolls back
                await self.db.commit()
                raise
            return await self._finish(started_at, failed=False, revision_count=revision_count)
        finally:
            unbind_contextvars("course_id")

    async def _run_stages(self) -> int:
        await self.manager.reconcile()
        self.stages.log("timeslices_reconciled")

        fetched = await self.fetch_revisions()
        self.stages.log("revisions_fetched")

        await self._call_collaborator(
            "uploads_imported",
            lambda: self.collaborators.uploads.import_uploads(self.db, self.course),
        )
        self.stages.log("uploads_imported")

        await self._call_collaborator(
            "categories_updated",
            lambda: self.collaborators.categories.refresh_categories(self.db, self.course),
        )
        self.stages.log("categories_updated")

        if await self.should_update_article_status():
            articles = await self.articles.get_for_course(self.course.id)
            await self._call_collaborator(
                "article_status_updated",
                lambda: self.collaborators.article_status.update_article_status(
                    self.db, self.course, articles
                ),
            )
            self.stages.log("article_status_updated")
        else:
            self.skipped_stages.append("article_status_updated")

        articles = await self.articles.get_for_course(self.course.id)
        await self._call_collaborator(
            "average_pageviews_updated",
            lambda: self.collaborators.pageviews.update_average_views(
                self.db, self.course, articles
            ),
        )
        self.stages.log("average_pageviews_updated")

        revision_count = await self.update_caches(fetched)
        self.stages.log("course_cache_updated")
        return revision_count

    async def _finish(
        self, started_at: datetime, *, failed: bool, revision_count: int
    ) -> UpdateRunSummary:
        ended_at = self.stages.log("done")
        run = await self.update_runs.create(
            self.course.id,
            started_at=started_at,
            ended_at=ended_at,
            error_count=self.errors.count,
            stage_times=self.stages.stage_times,
            skipped_stages=self.skipped_stages,
            failed=failed,
        )
        if not failed:
            self.course.needs_update = False
        await self.db.flush()

        logger.info(
            "course_update.completed",
            course=self.course.slug,
            duration_seconds=run.duration_seconds,
            error_count=self.errors.count,
            revisions=revision_count,
            skipped_stages=self.skipped_stages,
            failed=failed,
        )
        summary = UpdateRunSummary.model_validate(run)
        return summary.model_copy(update={"revision_count": revision_count})

    # -------------------------------------------------------------------------
    # Fetch
    # -------------------------------------------------------------------------

    async def fetch_revisions(self) -> list[FetchedWindow]:
        """Fetch every due window of every tracked wiki.

        Wikis are queried concurrently; articles are then resolved one window
        at a time on the course session. Failed windows are flagged and left
        out of the result.
        """
        now = self.clock()
        wikis = await self.courses.get_tracked_wikis(self.course.id)
        students = await self.fetcher.get_students()
        usernames = sorted(students)

        due = {wiki.id: await self.fetcher.due_windows(wiki, now) for wiki in wikis}
        semaphore = asyncio.Semaphore(self.settings.fetch_concurrency)

        async def fetch_wiki(
            wiki: Wiki,
        ) -> list[tuple[CourseWikiTimeslice, FetchResult | RevisionFetchError]]:
            outcomes = []
            async with semaphore:
                for timeslice in due[wiki.id]:
                    window = Window(timeslice.start, timeslice.end)
                    try:
                        result = await self.fetcher.query_revisions(
                            wiki,
                            window,
                            timeslice.last_mw_rev_datetime,
                            usernames,
                            now,
                            cursor_rev_id=timeslice.last_mw_rev_id,
                        )
                    except RevisionFetchError as e:
                        outcomes.append((timeslice, e))
                    else:
                        outcomes.append((timeslice, result))
            return outcomes

        per_wiki = await asyncio.gather(*(fetch_wiki(wiki) for wiki in wikis))

        fetched: list[FetchedWindow] = []
        for wiki, outcomes in zip(wikis, per_wiki):
            failures: list[tuple[CourseWikiTimeslice, RevisionFetchError]] = []
            for timeslice, outcome in outcomes:
                if isinstance(outcome, RevisionFetchError):
                    self.fetcher.mark_failed(timeslice)
                    failures.append((timeslice, outcome))
                    continue
                if outcome.scoring_failed:
                    self.errors.record(
                        outcome.scoring_error,
                        "revisions_fetched",
                        wiki=wiki.domain,
                        window_start=timeslice.start.isoformat(),
                    )
                try:
                    async with self.db.begin_nested():
                        await self.fetcher.resolve_articles(wiki, outcome, students)
                except SQLAlchemyError as e:
                    self.errors.record(
                        e,
                        "revisions_fetched",
                        wiki=wiki.domain,
                        window_start=timeslice.start.isoformat(),
                    )
                    await self.db.refresh(timeslice)
                    self.fetcher.mark_failed(timeslice)
                    continue
                fetched.append(FetchedWindow(wiki, timeslice, outcome))
            if failures:
                # One error per wiki; every failed window is already flagged
                first_failed, error = failures[0]
                self.errors.record(
                    error,
                    "revisions_fetched",
                    wiki=wiki.domain,
                    window_start=first_failed.start.isoformat(),
                    failed_windows=len(failures),
                )

        logger.info(
            "course_update.revisions_fetched",
            wikis=len(wikis),
            windows=sum(len(windows) for windows in due.values()),
            revisions=sum(item.result.revision_count for item in fetched),
        )
        return fetched

    # -------------------------------------------------------------------------
    # Admission control
    # -------------------------------------------------------------------------

    async def should_update_article_status(self) -> bool:
        """Skip article status for courses whose updates run long."""
        if self.settings.bypass_admission_control:
            return True
        longest = await self.update_runs.longest_update_time(self.course.id)
        if longest is None or longest < self.settings.admission_time_budget_seconds:
            return True
        logger.info(
            "course_update.article_status_skipped",
            longest_update_seconds=longest,
            budget_seconds=self.settings.admission_time_budget_seconds,
        )
        return False

    # -------------------------------------------------------------------------
    # Caches
    # -------------------------------------------------------------------------

    async def update_caches(self, fetched: Sequence[FetchedWindow]) -> int:
        """Fold each window, advance its cursor, then roll up the course.

        A window's fold and cursor move share one savepoint, so a failed
        window keeps its previous cache and cursor.
        """
        folded = 0
        for item in fetched:
            timeslice = item.timeslice
            window_start = timeslice.start.isoformat()
            try:
                async with self.db.begin_nested():
                    folded += await self.aggregator.apply_revisions(
                        timeslice, item.result.revisions_by_article
                    )
                    self.fetcher.mark_fetched(timeslice, item.result)
            except (AggregationError, SQLAlchemyError) as e:
                self.errors.record(
                    e, "course_cache_updated", wiki=item.wiki.domain, window_start=window_start
                )
                await self.db.refresh(timeslice)
                self.fetcher.mark_failed(timeslice)

        try:
            async with self.db.begin_nested():
                await self.aggregator.roll_up_course_cache()
        except Exception as e:
            self.errors.record(e, "course_cache_updated")
        return folded

    async def _call_collaborator(
        self, stage: str, call: Callable[[], Awaitable[None]]
    ) -> None:
        try:
            async with self.db.begin_nested():
                await call()
        except Exception as e:
            self.errors.record(e, stage)
