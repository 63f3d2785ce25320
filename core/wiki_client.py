"""Shared HTTP client for MediaWiki and LiftWing API requests.

Provides a connection-pooled ``httpx.AsyncClient`` used by the revision
fetcher and the revision scorer, and the per-wiki circuit breakers guarding
those calls.
"""

from __future__ import annotations

import asyncio

import httpx
from circuitbreaker import CircuitBreaker

from core.config import get_settings

_wiki_http_client: httpx.AsyncClient | None = None
_wiki_client_lock = asyncio.Lock()


async def get_wiki_client() -> httpx.AsyncClient:
    """Get or create a shared HTTP client for wiki API requests.

    Uses connection pooling to reduce overhead from per-request client creation.
    Guarded by asyncio.Lock to prevent concurrent course runs racing on creation.
    """
    global _wiki_http_client

    if _wiki_http_client is not None and not _wiki_http_client.is_closed:
        return _wiki_http_client

    async with _wiki_client_lock:
        if _wiki_http_client is not None and not _wiki_http_client.is_closed:
            return _wiki_http_client

        settings = get_settings()
        _wiki_http_client = httpx.AsyncClient(
            timeout=settings.http_timeout,
            follow_redirects=True,
            headers={"User-Agent": settings.wiki_user_agent},
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
        return _wiki_http_client


async def close_wiki_client() -> None:
    """Close the shared wiki HTTP client (called when a CLI command exits)."""
    global _wiki_http_client
    if _wiki_http_client is not None and not _wiki_http_client.is_closed:
        await _wiki_http_client.aclose()
    _wiki_http_client = None


# Exceptions that count as failures for a wiki's circuit breaker
RETRIABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.RequestError,
    httpx.TimeoutException,
    httpx.HTTPStatusError,
)

_circuits: dict[str, CircuitBreaker] = {}


def get_circuit(name: str) -> CircuitBreaker:
    """Get the circuit breaker for one remote API, e.g. ``mediawiki:en.wikipedia.org``.

    CIRCUIT BREAKER: Opens after 5 consecutive failures, recovers after 60 seconds.
    Breakers are keyed by name, so each wiki trips independently.
    """
    breaker = _circuits.get(name)
    if breaker is None:
        breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=60,
            expected_exception=RETRIABLE_EXCEPTIONS,
            name=name,
        )
        _circuits[name] = breaker
    return breaker


def reset_circuits() -> None:
    """Forget all circuit breaker state (used between tests)."""
    _circuits.clear()
