"""Revision scoring: references added by each revision.

Scores come from the Wikimedia LiftWing articlequality model, which reports
the ``ref_tags`` feature for a revision. The references a revision added is
its feature value minus its parent's.

Scorers are interchangeable; the updater only relies on ``score`` returning a
mapping of revision id -> references added.
"""

import asyncio
from collections.abc import Sequence
from typing import Protocol

import httpx
from circuitbreaker import CircuitBreakerError

from core import get_logger
from core.config import get_settings
from core.wiki_client import RETRIABLE_EXCEPTIONS, get_circuit, get_wiki_client
from models import Wiki
from schemas import Revision

logger = get_logger(__name__)

REF_TAGS_FEATURE = "feature.wikitext.revision.ref_tags"

# Projects with a deployed articlequality model
SCORED_PROJECTS = {"wikipedia"}

MAX_CONCURRENT_PREDICTIONS = 5


class RevisionScoringError(Exception):
    """Raised when scores could not be fetched for a batch of revisions."""

    def __init__(self, wiki_domain: str, message: str) -> None:
        self.wiki_domain = wiki_domain
        super().__init__(f"Scoring failed for {wiki_domain}: {message}")


class RevisionScorer(Protocol):
    async def score(self, wiki: Wiki, revisions: Sequence[Revision]) -> dict[int, int]:
        """Return references added, keyed by ``mw_rev_id``."""
        ...


class NullRevisionScorer:
    """Scores every revision as adding no references."""

    async def score(self, wiki: Wiki, revisions: Sequence[Revision]) -> dict[int, int]:
        return {}


class LiftWingRevisionScorer:
    """Scores revisions with the LiftWing articlequality model."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
    ):
        self._client = client
        self.base_url = (base_url or get_settings().liftwing_url).rstrip("/")

    def supports(self, wiki: Wiki) -> bool:
        return wiki.language is not None and wiki.project in SCORED_PROJECTS

    async def score(self, wiki: Wiki, revisions: Sequence[Revision]) -> dict[int, int]:
        if not revisions or not self.supports(wiki):
            return {}

        client = self._client or await get_wiki_client()
        url = f"{self.base_url}/{wiki.language}wiki-articlequality:predict"
        breaker = get_circuit(f"liftwing:{wiki.language}wiki")
        semaphore = asyncio.Semaphore(MAX_CONCURRENT_PREDICTIONS)

        rev_ids = {rev.mw_rev_id for rev in revisions}
        rev_ids |= {rev.mw_parent_rev_id for rev in revisions if rev.mw_parent_rev_id}

        async def predict(rev_id: int) -> tuple[int, int | None]:
            async with semaphore:
                return rev_id, await breaker(_predict_ref_tags)(client, url, rev_id)

        try:
            results = await asyncio.gather(*(predict(rev_id) for rev_id in sorted(rev_ids)))
        except CircuitBreakerError as e:
            raise RevisionScoringError(wiki.domain, "LiftWing temporarily unavailable") from e
        except (*RETRIABLE_EXCEPTIONS, ValueError) as e:
            raise RevisionScoringError(wiki.domain, str(e)) from e

        ref_tags = dict(results)
        scores = {}
        for rev in revisions:
            current = ref_tags.get(rev.mw_rev_id)
            if current is None:
                continue
            parent = ref_tags.get(rev.mw_parent_rev_id) or 0
            scores[rev.mw_rev_id] = current - parent

        logger.debug(
            "revision_scorer.scored",
            wiki=wiki.domain,
            revisions=len(revisions),
            scored=len(scores),
        )
        return scores


async def _predict_ref_tags(
    client: httpx.AsyncClient, url: str, rev_id: int
) -> int | None:
    """Internal: ref_tags feature for one revision, None when unavailable."""
    response = await client.post(url, json={"rev_id": rev_id, "extended_output": True})

    # Deleted or suppressed revisions cannot be scored
    if response.status_code in (400, 404):
        return None
    response.raise_for_status()

    payload = response.json()
    for wiki_scores in payload.values():
        if not isinstance(wiki_scores, dict):
            continue
        score = (wiki_scores.get("scores") or {}).get(str(rev_id)) or {}
        features = (score.get("articlequality") or {}).get("features") or {}
        value = features.get(REF_TAGS_FEATURE)
        if value is not None:
            return int(value)
    return None


def get_revision_scorer() -> RevisionScorer:
    if get_settings().enable_revision_scoring:
        return LiftWingRevisionScorer()
    return NullRevisionScorer()
