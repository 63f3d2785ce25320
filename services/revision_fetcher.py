"""Revision fetching for course windows.

Pulls the course students' revisions for one window from the MediaWiki
``list=usercontribs`` API, starting after the window's cursor so that already
folded revisions are never returned twice.

Network access and database access are split:
- ``query_revisions`` only talks to the wiki (safe to run concurrently)
- ``resolve_articles`` only talks to the database (run on the course session)
- ``fetch_for_window`` does both for callers that don't need the split

CIRCUIT BREAKER: one per wiki, opens after 5 consecutive failures and
recovers after 60 seconds. There is no retry loop; failed windows are flagged
and picked up by the next run.
"""

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

import httpx
from circuitbreaker import CircuitBreakerError
from sqlalchemy.ext.asyncio import AsyncSession

from core import get_logger
from core.wiki_client import RETRIABLE_EXCEPTIONS, get_circuit, get_wiki_client
from models import Article, Course, CourseWikiTimeslice, Namespace, Wiki, utcnow
from repositories.article_repository import ArticleCourseRepository, ArticleRepository
from repositories.course_repository import CourseRepository
from repositories.timeslice_repository import CourseWikiTimesliceRepository
from schemas import Revision
from services.revision_scorer import (
    NullRevisionScorer,
    RevisionScorer,
    RevisionScoringError,
)
from services.window_grid import Window

logger = get_logger(__name__)

MW_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# usercontribs accepts at most 50 users per request
USERNAMES_PER_QUERY = 50

DEFAULT_NAMESPACES = (Namespace.MAINSPACE, Namespace.USER, Namespace.DRAFT)

# Edits made by the course platform itself
SYSTEM_EDIT_TAGS = frozenset({"dashboard.wikiedu.org"})


# =============================================================================
# Domain Exceptions
# =============================================================================


class RevisionFetchError(Exception):
    """Raised when revisions for a wiki or window could not be fetched."""

    def __init__(self, wiki_domain: str, message: str, window: Window | None = None):
        self.wiki_domain = wiki_domain
        self.window = window
        super().__init__(f"Revision fetch failed for {wiki_domain}: {message}")


@dataclass
class FetchResult:
    """Revisions fetched for one window."""

    wiki_id: int
    window: Window
    revisions: list[Revision] = field(default_factory=list)
    # Filled by resolve_articles
    revisions_by_article: dict[int, list[Revision]] = field(default_factory=dict)
    # Most recent in-range revision, including ones later dropped as untracked
    latest: datetime | None = None
    latest_rev_id: int | None = None
    scoring_error: RevisionScoringError | None = None

    @property
    def scoring_failed(self) -> bool:
        return self.scoring_error is not None

    @property
    def revision_count(self) -> int:
        return sum(len(revs) for revs in self.revisions_by_article.values())


def format_mw_timestamp(ts: datetime) -> str:
    return ts.strftime(MW_TIMESTAMP_FORMAT)


def parse_mw_timestamp(value: str) -> datetime:
    return datetime.strptime(value, MW_TIMESTAMP_FORMAT)


def fetch_bounds(
    window: Window, cursor: datetime | None, now: datetime
) -> tuple[datetime, datetime] | None:
    """Query range for a window, or None when there is nothing to ask for.

    The lower bound is the cursor when one is set (revisions at the cursor
    itself are filtered out afterwards), otherwise the window start.
    """
    lower = max(cursor, window.start) if cursor is not None else window.start
    upper = min(window.end, now)
    if upper < lower:
        return None
    return lower, upper


def in_fetch_range(
    date: datetime,
    window: Window,
    cursor: datetime | None,
    now: datetime,
    rev_id: int | None = None,
    cursor_rev_id: int | None = None,
) -> bool:
    if cursor is not None:
        if date < cursor:
            return False
        # Same second as the cursor: only revisions saved after it
        if date == cursor and (
            cursor_rev_id is None or rev_id is None or rev_id <= cursor_rev_id
        ):
            return False
    return window.start <= date < window.end and date <= now


def parse_contribution(item: dict, wiki: Wiki) -> Revision:
    """Build a Revision from a ``usercontribs`` entry (formatversion=2)."""
    try:
        return Revision(
            mw_rev_id=item["revid"],
            mw_parent_rev_id=item.get("parentid") or 0,
            mw_page_id=item["pageid"],
            wiki_id=wiki.id,
            username=item["user"],
            date=parse_mw_timestamp(item["timestamp"]),
            title=item.get("title", ""),
            namespace=item.get("ns", Namespace.MAINSPACE),
            characters=item.get("sizediff") or 0,
            new_article=bool(item.get("new", False)),
            system=bool(SYSTEM_EDIT_TAGS.intersection(item.get("tags") or ())),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise RevisionFetchError(wiki.domain, f"Malformed contribution {item!r}: {e}") from e


async def _query_usercontribs(
    client: httpx.AsyncClient, api_url: str, params: dict[str, str]
) -> dict:
    """Internal: one usercontribs request. Use RevisionFetcher instead."""
    response = await client.get(api_url, params=params)
    response.raise_for_status()
    return response.json()


class RevisionFetcher:
    """Fetches a course's new revisions window by window."""

    def __init__(
        self,
        db: AsyncSession,
        course: Course,
        scorer: RevisionScorer | None = None,
        client: httpx.AsyncClient | None = None,
        namespaces: Iterable[int] = DEFAULT_NAMESPACES,
    ):
        self.db = db
        self.course = course
        self.scorer = scorer or NullRevisionScorer()
        self._client = client
        self.namespaces = tuple(namespaces)
        self.courses = CourseRepository(db)
        self.articles = ArticleRepository(db)
        self.articles_courses = ArticleCourseRepository(db)
        self.course_wiki_timeslices = CourseWikiTimesliceRepository(db)

    async def due_windows(
        self, wiki: Wiki, now: datetime | None = None
    ) -> list[CourseWikiTimeslice]:
        return await self.course_wiki_timeslices.get_due(
            self.course.id, wiki.id, now or utcnow()
        )

    async def get_students(self) -> dict[str, int]:
        return await self.courses.get_students(self.course.id)

    # -------------------------------------------------------------------------
    # Network
    # -------------------------------------------------------------------------

    async def query_revisions(
        self,
        wiki: Wiki,
        window: Window,
        cursor: datetime | None,
        usernames: Sequence[str],
        now: datetime | None = None,
        cursor_rev_id: int | None = None,
    ) -> FetchResult:
        """Fetch and score the window's revisions newer than ``cursor``.

        Raises:
            RevisionFetchError: On transport errors, error payloads or an
                open circuit.
        """
        now = now or utcnow()
        result = FetchResult(wiki_id=wiki.id, window=window)
        bounds = fetch_bounds(window, cursor, now)
        if bounds is None or not usernames:
            return result
        lower, upper = bounds

        revisions: dict[int, Revision] = {}
        for offset in range(0, len(usernames), USERNAMES_PER_QUERY):
            batch = usernames[offset : offset + USERNAMES_PER_QUERY]
            params = {
                "action": "query",
                "list": "usercontribs",
                "ucuser": "|".join(batch),
                "ucstart": format_mw_timestamp(lower),
                "ucend": format_mw_timestamp(upper),
                "ucdir": "newer",
                "ucnamespace": "|".join(str(int(ns)) for ns in self.namespaces),
                "ucprop": "ids|title|timestamp|sizediff|flags|tags",
                "uclimit": "max",
                "format": "json",
                "formatversion": "2",
            }
            async for item in self._paginate(wiki, window, params):
                revision = parse_contribution(item, wiki)
                if revision.namespace not in self.namespaces:
                    continue
                if in_fetch_range(
                    revision.date,
                    window,
                    cursor,
                    now,
                    rev_id=revision.mw_rev_id,
                    cursor_rev_id=cursor_rev_id,
                ):
                    revisions[revision.mw_rev_id] = revision

        result.revisions = sorted(revisions.values(), key=lambda r: (r.date, r.mw_rev_id))
        if result.revisions:
            result.latest = result.revisions[-1].date
            result.latest_rev_id = result.revisions[-1].mw_rev_id
            await self._score(wiki, result)
        return result

    async def _paginate(self, wiki: Wiki, window: Window, params: dict[str, str]):
        """Yield contributions, following ``continue`` until exhausted."""
        while True:
            payload = await self._request(wiki, window, params)
            for item in (payload.get("query") or {}).get("usercontribs") or []:
                yield item
            continuation = payload.get("continue")
            if not continuation:
                return
            params = {**params, **continuation}

    async def _request(
        self, wiki: Wiki, window: Window, params: dict[str, str]
    ) -> dict:
        client = self._client or await get_wiki_client()
        breaker = get_circuit(f"mediawiki:{wiki.domain}")
        try:
            payload = await breaker(_query_usercontribs)(client, wiki.api_url, params)
        except CircuitBreakerError as e:
            raise RevisionFetchError(
                wiki.domain, "API temporarily unavailable", window
            ) from e
        except RETRIABLE_EXCEPTIONS as e:
            raise RevisionFetchError(wiki.domain, f"Request error: {e}", window) from e
        except ValueError as e:
            raise RevisionFetchError(wiki.domain, f"Malformed response: {e}", window) from e

        if not isinstance(payload, dict):
            raise RevisionFetchError(wiki.domain, "Malformed response", window)
        if "error" in payload:
            error = payload["error"] or {}
            raise RevisionFetchError(
                wiki.domain, f"API error: {error.get('info') or error.get('code')}", window
            )
        return payload

    async def _score(self, wiki: Wiki, result: FetchResult) -> None:
        try:
            scores = await self.scorer.score(wiki, result.revisions)
        except RevisionScoringError as e:
            # Revisions still count; their references stay at zero
            logger.warning(
                "revision_fetch.scoring_failed",
                course_id=self.course.id,
                wiki=wiki.domain,
                error=str(e),
            )
            result.scoring_error = e
            return
        result.revisions = [
            rev.with_references(scores[rev.mw_rev_id]) if rev.mw_rev_id in scores else rev
            for rev in result.revisions
        ]

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------

    async def resolve_articles(
        self, wiki: Wiki, result: FetchResult, students: dict[str, int]
    ) -> FetchResult:
        """Attach article and user ids, grouping revisions by article.

        Articles and their course associations are created on first sight.
        Revisions on articles the course stopped tracking are dropped.
        """
        untracked = await self.articles_courses.get_untracked_article_ids(self.course.id)
        articles: dict[int, Article] = {}
        grouped: dict[int, list[Revision]] = defaultdict(list)

        for revision in result.revisions:
            user_id = students.get(revision.username)
            if user_id is None:
                continue
            article = articles.get(revision.mw_page_id)
            if article is None:
                article = await self.articles.get_or_create(
                    wiki.id, revision.mw_page_id, revision.title, revision.namespace
                )
                articles[revision.mw_page_id] = article
            if article.id in untracked:
                continue
            await self.articles_courses.get_or_create(
                article.id, self.course.id, new_article=revision.new_article
            )
            grouped[article.id].append(
                revision.with_ids(article_id=article.id, user_id=user_id)
            )

        result.revisions_by_article = dict(grouped)
        return result

    async def fetch_for_window(
        self,
        wiki: Wiki,
        timeslice: CourseWikiTimeslice,
        now: datetime | None = None,
        students: dict[str, int] | None = None,
    ) -> FetchResult:
        """Fetch, score and resolve the new revisions of one grid window."""
        if students is None:
            students = await self.get_students()
        window = Window(timeslice.start, timeslice.end)
        result = await self.query_revisions(
            wiki,
            window,
            timeslice.last_mw_rev_datetime,
            sorted(students),
            now,
            cursor_rev_id=timeslice.last_mw_rev_id,
        )
        return await self.resolve_articles(wiki, result, students)

    # -------------------------------------------------------------------------
    # Cursor
    # -------------------------------------------------------------------------

    @staticmethod
    def mark_fetched(timeslice: CourseWikiTimeslice, result: FetchResult) -> None:
        """Advance the cursor after the window's revisions were folded in."""
        cursor = timeslice.last_mw_rev_datetime
        if result.latest is not None and (cursor is None or result.latest >= cursor):
            timeslice.last_mw_rev_datetime = result.latest
            timeslice.last_mw_rev_id = result.latest_rev_id
        timeslice.needs_update = False

    @staticmethod
    def mark_failed(timeslice: CourseWikiTimeslice) -> None:
        """Flag the window for the next run, leaving its cursor alone."""
        timeslice.needs_update = True
