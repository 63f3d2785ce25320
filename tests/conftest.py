"""Pytest configuration and shared fixtures.

This module provides:
- An in-memory SQLite database per test (aiosqlite, StaticPool)
- Async session fixtures for repository/service tests
- Settings and circuit breaker resets between tests
- A fake MediaWiki ``usercontribs`` API on httpx.MockTransport
"""

# Set environment variables BEFORE any imports that trigger Settings validation
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENABLE_REVISION_SCORING", "false")

from collections.abc import AsyncGenerator, Callable
from datetime import datetime

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  (registers tables on Base.metadata)
from core.config import clear_settings_cache
from core.database import Base, configure_sqlite
from core.wiki_client import reset_circuits

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# =============================================================================
# Global State Resets
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings():
    """Fresh settings for every test."""
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Circuit breakers must not carry failures from one test to the next."""
    reset_circuits()
    yield
    reset_circuits()


# =============================================================================
# Database
# =============================================================================


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine]:
    """Create a fresh in-memory database engine for each test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    configure_sqlite(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Provide a database session for each test."""
    async with session_maker() as session:
        yield session
        await session.rollback()


# =============================================================================
# Fake MediaWiki API
# =============================================================================


class FakeWikiApi:
    """In-memory ``list=usercontribs`` endpoint.

    Contributions are filtered by user, namespace and the inclusive
    ucstart/ucend range the way MediaWiki does, and paged ``page_size`` at a
    time with ``uccontinue``.
    """

    def __init__(self, page_size: int = 500):
        self.page_size = page_size
        self.contributions: dict[str, list[dict]] = {}
        self.failing_hosts: set[str] = set()
        self.requests: list[httpx.Request] = []

    def add(
        self,
        host: str,
        *,
        revid: int,
        pageid: int,
        user: str,
        timestamp: datetime,
        title: str = "Example",
        ns: int = 0,
        sizediff: int = 100,
        parentid: int = 0,
        new: bool = False,
        tags: list[str] | None = None,
    ) -> dict:
        item = {
            "userid": abs(hash(user)) % 100000,
            "user": user,
            "pageid": pageid,
            "revid": revid,
            "parentid": parentid,
            "ns": ns,
            "title": title,
            "timestamp": timestamp.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "sizediff": sizediff,
            "tags": tags or [],
        }
        if new:
            item["new"] = True
        self.contributions.setdefault(host, []).append(item)
        return item

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host in self.failing_hosts:
            return httpx.Response(503, text="Service Unavailable")

        params = request.url.params
        users = set(params["ucuser"].split("|"))
        namespaces = {int(ns) for ns in params["ucnamespace"].split("|")}
        start, end = params["ucstart"], params["ucend"]

        matching = sorted(
            (
                item
                for item in self.contributions.get(host, [])
                if item["user"] in users
                and item["ns"] in namespaces
                and start <= item["timestamp"] <= end
            ),
            key=lambda item: (item["timestamp"], item["revid"]),
        )
        offset = int(params.get("uccontinue", 0))
        page = matching[offset : offset + self.page_size]
        payload: dict = {"batchcomplete": True, "query": {"usercontribs": page}}
        if offset + self.page_size < len(matching):
            payload["continue"] = {
                "uccontinue": str(offset + self.page_size),
                "continue": "-||",
            }
        return httpx.Response(200, json=payload)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_wiki_api() -> FakeWikiApi:
    return FakeWikiApi()


@pytest_asyncio.fixture
async def wiki_client(fake_wiki_api: FakeWikiApi) -> AsyncGenerator[httpx.AsyncClient]:
    async with fake_wiki_api.client() as client:
        yield client


@pytest.fixture
def fixed_clock() -> Callable[[datetime], Callable[[], datetime]]:
    """Build a clock callable that always returns the given instant."""

    def make(now: datetime) -> Callable[[], datetime]:
        return lambda: now

    return make
