"""Timeslice grid management for a course.

Keeps the (course, wiki) window grids consistent with the course's current
configuration:
- Wikis added to the course get a fresh grid
- Wikis removed from the course lose their grid and every dependent
  article-course and course-user-wiki window
- Course date changes extend or trim the grid at either end
- Duration changes rebuild the grid from the ingestion point onward

Dependent windows that no longer line up with a grid window are deleted rather
than merged or split; the revision fetcher regenerates them on the next run.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from core import get_logger
from core.config import get_settings
from models import Course, CourseWikiTimeslice, Wiki
from repositories.article_repository import ArticleCourseRepository
from repositories.course_repository import CourseRepository
from repositories.timeslice_repository import (
    ArticleCourseTimesliceRepository,
    CourseUserWikiTimesliceRepository,
    CourseWikiTimesliceRepository,
)
from schemas import TimesliceDurationFlags
from services.window_grid import (
    InvalidTimesliceDurationError,
    Window,
    build_windows,
    build_windows_until,
    window_containing,
)

logger = get_logger(__name__)


# =============================================================================
# Domain Exceptions
# =============================================================================


class TimesliceConfigurationError(Exception):
    """Raised when a course's dates or duration flags cannot produce a grid."""

    def __init__(self, course_id: int, reason: str) -> None:
        self.course_id = course_id
        self.reason = reason
        super().__init__(f"Invalid timeslice configuration for course {course_id}: {reason}")


@dataclass
class ReconciliationResult:
    """What a reconciliation pass changed."""

    added_wiki_ids: list[int] = field(default_factory=list)
    removed_wiki_ids: list[int] = field(default_factory=list)
    resized_wiki_ids: list[int] = field(default_factory=list)
    redated_wiki_ids: list[int] = field(default_factory=list)
    timeslices_created: int = 0
    timeslices_deleted: int = 0
    dependent_timeslices_deleted: int = 0

    @property
    def changed(self) -> bool:
        return bool(
            self.timeslices_created
            or self.timeslices_deleted
            or self.dependent_timeslices_deleted
        )


def timeslice_duration(course: Course, wiki: Wiki, default: int | None = None) -> int:
    """Window duration in seconds for a course and wiki.

    Looks up ``course.flags["timeslice_duration"]`` by wiki domain, then its
    ``default`` entry, then the global setting.

    Raises:
        TimesliceConfigurationError: If the flag holds an invalid duration.
    """
    if default is None:
        default = get_settings().timeslice_duration_seconds
    raw = (course.flags or {}).get("timeslice_duration") or {}
    try:
        flags = TimesliceDurationFlags.model_validate(raw)
        duration = flags.for_domain(wiki.domain)
    except (ValidationError, ValueError, TypeError) as e:
        raise TimesliceConfigurationError(course.id, str(e)) from e
    return duration if duration is not None else default


class TimesliceManager:
    """Builds, resizes and prunes the window grids of one course."""

    def __init__(self, db: AsyncSession, course: Course):
        self.db = db
        self.course = course
        self.courses = CourseRepository(db)
        self.course_wiki_timeslices = CourseWikiTimesliceRepository(db)
        self.article_course_timeslices = ArticleCourseTimesliceRepository(db)
        self.course_user_wiki_timeslices = CourseUserWikiTimesliceRepository(db)
        self.articles_courses = ArticleCourseRepository(db)

    def duration_for(self, wiki: Wiki) -> int:
        return timeslice_duration(self.course, wiki)

    def validate_configuration(self, wikis: Iterable[Wiki]) -> dict[int, int]:
        """Check dates and durations before touching any rows.

        Returns:
            Mapping of wiki id -> configured duration.
        """
        if self.course.start is None or self.course.end is None:
            raise TimesliceConfigurationError(self.course.id, "course dates are not set")
        if self.course.end < self.course.start:
            raise TimesliceConfigurationError(
                self.course.id,
                f"course ends ({self.course.end}) before it starts ({self.course.start})",
            )
        durations = {}
        for wiki in wikis:
            duration = self.duration_for(wiki)
            if duration <= 0:
                raise TimesliceConfigurationError(
                    self.course.id, f"duration for {wiki.domain} must be positive"
                )
            durations[wiki.id] = duration
        return durations

    # -------------------------------------------------------------------------
    # Wiki set
    # -------------------------------------------------------------------------

    async def create_timeslices_for_new_course_wiki_records(
        self, wikis: Iterable[Wiki]
    ) -> int:
        """Build a grid over the course range for each wiki lacking one.

        Returns number of windows created. An empty course range creates none.
        """
        existing = await self.course_wiki_timeslices.get_wiki_ids(self.course.id)
        created = 0
        for wiki in wikis:
            if wiki.id in existing:
                continue
            windows = self._build(self.course.start, self.course.end, self.duration_for(wiki))
            await self.course_wiki_timeslices.create_windows(self.course.id, wiki.id, windows)
            created += len(windows)
            logger.info(
                "timeslices.grid_created",
                course_id=self.course.id,
                wiki=wiki.domain,
                windows=len(windows),
            )
        return created

    async def delete_timeslices_for_deleted_course_wikis(
        self, wiki_ids: Iterable[int]
    ) -> tuple[int, int]:
        """Delete grids and dependent rows of wikis no longer tracked.

        Returns:
            Tuple of (grid windows deleted, dependent rows deleted)
        """
        deleted = 0
        dependents = 0
        for wiki_id in wiki_ids:
            deleted += await self.course_wiki_timeslices.delete_for_wiki(
                self.course.id, wiki_id
            )
            dependents += await self.course_user_wiki_timeslices.delete_for_wiki(
                self.course.id, wiki_id
            )
            dependents += await self.article_course_timeslices.delete_for_wiki(
                self.course.id, wiki_id
            )
            await self.articles_courses.delete_for_wiki(self.course.id, wiki_id)
            logger.info(
                "timeslices.grid_deleted", course_id=self.course.id, wiki_id=wiki_id
            )
        return deleted, dependents

    async def reconcile_wiki_set(
        self,
        added_wikis: Iterable[Wiki],
        removed_wiki_ids: Iterable[int],
        result: ReconciliationResult | None = None,
    ) -> ReconciliationResult:
        if result is None:
            result = ReconciliationResult()
        added_wikis = list(added_wikis)
        removed_wiki_ids = list(removed_wiki_ids)

        result.timeslices_created += await self.create_timeslices_for_new_course_wiki_records(
            added_wikis
        )
        deleted, dependents = await self.delete_timeslices_for_deleted_course_wikis(
            removed_wiki_ids
        )
        result.timeslices_deleted += deleted
        result.dependent_timeslices_deleted += dependents
        result.added_wiki_ids.extend(wiki.id for wiki in added_wikis)
        result.removed_wiki_ids.extend(removed_wiki_ids)
        return result

    # -------------------------------------------------------------------------
    # Duration
    # -------------------------------------------------------------------------

    async def reconciliation_point(
        self, wiki_id: int, grid: Sequence[CourseWikiTimeslice] | None = None
    ) -> datetime:
        """Start of the window holding the grid's latest cursor.

        Falls back to the course start when nothing was fetched yet.
        """
        if grid is None:
            grid = await self.course_wiki_timeslices.get_grid(self.course.id, wiki_id)
        cursors = [t.last_mw_rev_datetime for t in grid if t.last_mw_rev_datetime]
        if not cursors:
            return self.course.start
        latest = max(cursors)
        holder = window_containing((Window(t.start, t.end) for t in grid), latest)
        if holder is not None:
            return max(holder.start, self.course.start)
        started = [t.start for t in grid if t.start <= latest]
        return max(started) if started else self.course.start

    async def current_duration(self, wiki_id: int) -> int | None:
        """Duration of the grid's last window.

        The tail is always built at the duration in effect when it was built.
        """
        grid = await self.course_wiki_timeslices.get_grid(self.course.id, wiki_id)
        if not grid:
            return None
        return grid[-1].duration

    async def reconcile_duration(
        self,
        old_duration: int | None,
        new_duration: int,
        wikis: Iterable[Wiki] | None = None,
        result: ReconciliationResult | None = None,
    ) -> ReconciliationResult:
        """Rebuild grids from the reconciliation point at ``new_duration``.

        Windows starting before the point keep their duration. Dependent
        windows that no longer match a grid window are deleted.
        """
        if result is None:
            result = ReconciliationResult()
        if not isinstance(new_duration, int) or new_duration <= 0:
            raise TimesliceConfigurationError(
                self.course.id, f"invalid duration {new_duration!r}"
            )
        if wikis is None:
            wikis = await self.courses.get_tracked_wikis(self.course.id)

        for wiki in wikis:
            grid = await self.course_wiki_timeslices.get_grid(self.course.id, wiki.id)
            if not grid:
                continue
            point = await self.reconciliation_point(wiki.id, grid)
            kept = [t for t in grid if t.start < point]
            stale = [t for t in grid if t.start >= point]
            rebuilt = self._build(point, self.course.end, new_duration)
            if not stale and not rebuilt:
                continue

            result.timeslices_deleted += await self.course_wiki_timeslices.delete_by_ids(
                t.id for t in stale
            )
            await self.course_wiki_timeslices.create_windows(self.course.id, wiki.id, rebuilt)
            result.timeslices_created += len(rebuilt)

            surviving = [Window(t.start, t.end) for t in kept] + rebuilt
            result.dependent_timeslices_deleted += await self._delete_misaligned(
                wiki.id, surviving
            )
            result.resized_wiki_ids.append(wiki.id)
            logger.info(
                "timeslices.duration_changed",
                course_id=self.course.id,
                wiki=wiki.domain,
                old_duration=old_duration,
                new_duration=new_duration,
                reconciliation_point=point.isoformat(),
                windows_rebuilt=len(rebuilt),
            )
        return result

    # -------------------------------------------------------------------------
    # Dates
    # -------------------------------------------------------------------------

    async def reconcile_date_range(
        self, wiki: Wiki, result: ReconciliationResult | None = None
    ) -> ReconciliationResult:
        """Extend or trim a wiki's grid to the course's current dates.

        - Start moved earlier: prepend windows, clipping the last one so it
          meets the old first window
        - Start moved later: drop windows before it, rebuild the straddling one
        - End moved later: append windows
        - End moved earlier: drop windows starting at or after it
        """
        if result is None:
            result = ReconciliationResult()
        grid = await self.course_wiki_timeslices.get_grid(self.course.id, wiki.id)
        if not grid:
            return result

        start, end = self.course.start, self.course.end
        duration = self.duration_for(wiki)
        removed = [t for t in grid if t.start < start or t.start >= end]
        remaining = [t for t in grid if start <= t.start < end]

        windows = [Window(t.start, t.end) for t in remaining]
        created: list[Window] = []
        if not windows:
            created = self._build(start, end, duration)
        else:
            if windows[0].start > start:
                created += build_windows_until(start, windows[0].start, duration)
            if windows[-1].end < end:
                created += self._build(windows[-1].end, end, duration)

        if not removed and not created:
            return result

        result.timeslices_deleted += await self.course_wiki_timeslices.delete_by_ids(
            t.id for t in removed
        )
        await self.course_wiki_timeslices.create_windows(self.course.id, wiki.id, created)
        result.timeslices_created += len(created)
        result.dependent_timeslices_deleted += await self._delete_misaligned(
            wiki.id, windows + created
        )
        result.redated_wiki_ids.append(wiki.id)
        logger.info(
            "timeslices.dates_changed",
            course_id=self.course.id,
            wiki=wiki.domain,
            windows_removed=len(removed),
            windows_added=len(created),
        )
        return result

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def reconcile(self) -> ReconciliationResult:
        """Bring every grid of the course in line with its configuration.

        All changes happen inside one savepoint; configuration errors are
        raised before any row is touched.

        Raises:
            TimesliceConfigurationError: If dates or duration flags are invalid.
        """
        tracked = await self.courses.get_tracked_wikis(self.course.id)
        durations = self.validate_configuration(tracked)
        grid_wiki_ids = await self.course_wiki_timeslices.get_wiki_ids(self.course.id)

        tracked_ids = {wiki.id for wiki in tracked}
        added = [wiki for wiki in tracked if wiki.id not in grid_wiki_ids]
        removed = sorted(grid_wiki_ids - tracked_ids)

        result = ReconciliationResult()
        async with self.db.begin_nested():
            await self.reconcile_wiki_set(added, removed, result)
            for wiki in tracked:
                if wiki.id not in grid_wiki_ids:
                    continue
                old_duration = await self.current_duration(wiki.id)
                if old_duration is not None and old_duration != durations[wiki.id]:
                    await self.reconcile_duration(
                        old_duration, durations[wiki.id], [wiki], result
                    )
                await self.reconcile_date_range(wiki, result)

        if result.changed:
            logger.info(
                "timeslices.reconciled",
                course_id=self.course.id,
                added_wikis=result.added_wiki_ids,
                removed_wikis=result.removed_wiki_ids,
                resized_wikis=result.resized_wiki_ids,
                created=result.timeslices_created,
                deleted=result.timeslices_deleted,
                dependents_deleted=result.dependent_timeslices_deleted,
            )
        return result

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _build(self, start: datetime, end: datetime, duration: int) -> list[Window]:
        try:
            return build_windows(start, end, duration)
        except InvalidTimesliceDurationError as e:
            raise TimesliceConfigurationError(self.course.id, str(e)) from e

    async def _delete_misaligned(self, wiki_id: int, grid: Sequence[Window]) -> int:
        deleted = await self.article_course_timeslices.delete_misaligned(
            self.course.id, wiki_id, grid
        )
        deleted += await self.course_user_wiki_timeslices.delete_misaligned(
            self.course.id, wiki_id, grid
        )
        return deleted
