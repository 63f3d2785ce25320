"""Tests for the timeslice, article and update run repositories."""

from datetime import datetime, timedelta

import pytest

from models import ArticleCourseTimeslice, CourseUserWikiTimeslice
from repositories.article_repository import ArticleCourseRepository, ArticleRepository
from repositories.course_repository import CourseRepository, WikiRepository
from repositories.timeslice_repository import (
    ArticleCourseTimesliceRepository,
    CourseUserWikiTimesliceRepository,
    CourseWikiTimesliceRepository,
)
from repositories.update_run_repository import UpdateRunRepository
from services.window_grid import Window, build_windows
from tests.factories import (
    CourseFactory,
    CourseUpdateRunFactory,
    WikidataFactory,
    WikiFactory,
    create_article_course,
    create_async,
    enroll_student,
)

pytestmark = pytest.mark.integration

START = datetime(2018, 11, 24)
DAY = timedelta(days=1)


@pytest.fixture
async def course(db_session):
    return await create_async(CourseFactory, db_session)


@pytest.fixture
async def wiki(db_session):
    return await create_async(WikiFactory, db_session)


class TestCourseWikiTimesliceRepository:
    async def test_create_and_read_grid(self, db_session, course, wiki):
        repo = CourseWikiTimesliceRepository(db_session)
        windows = build_windows(START, START + 3 * DAY, 86400)

        await repo.create_windows(course.id, wiki.id, reversed(windows))

        grid = await repo.get_grid(course.id, wiki.id)
        assert [Window(t.start, t.end) for t in grid] == windows
        assert all(t.needs_update for t in grid)
        assert await repo.get_wiki_ids(course.id) == {wiki.id}

    async def test_latest_cursor(self, db_session, course, wiki):
        repo = CourseWikiTimesliceRepository(db_session)
        grid = await repo.create_windows(
            course.id, wiki.id, build_windows(START, START + 3 * DAY, 86400)
        )
        assert await repo.get_latest_cursor(course.id, wiki.id) is None

        grid[0].last_mw_rev_datetime = START + timedelta(hours=5)
        grid[1].last_mw_rev_datetime = START + DAY + timedelta(hours=2)
        await db_session.flush()

        assert await repo.get_latest_cursor(course.id, wiki.id) == grid[1].last_mw_rev_datetime

    async def test_get_due(self, db_session, course, wiki):
        repo = CourseWikiTimesliceRepository(db_session)
        grid = await repo.create_windows(
            course.id, wiki.id, build_windows(START, START + 4 * DAY, 86400), needs_update=False
        )
        grid[1].last_mw_rev_datetime = START + DAY + timedelta(hours=3)
        grid[0].needs_update = True
        await db_session.flush()

        due = await repo.get_due(course.id, wiki.id, now=START + 2 * DAY + timedelta(hours=1))

        assert [t.id for t in due] == [grid[0].id, grid[1].id, grid[2].id]

    async def test_delete_for_wiki_leaves_other_wikis(self, db_session, course, wiki):
        other = await create_async(WikidataFactory, db_session)
        repo = CourseWikiTimesliceRepository(db_session)
        windows = build_windows(START, START + 2 * DAY, 86400)
        await repo.create_windows(course.id, wiki.id, windows)
        await repo.create_windows(course.id, other.id, windows)

        deleted = await repo.delete_for_wiki(course.id, wiki.id)

        assert deleted == 2
        assert await repo.get_wiki_ids(course.id) == {other.id}


class TestDependentTimesliceRepositories:
    async def test_delete_misaligned_keeps_rows_matching_grid(self, db_session, course, wiki):
        user = await enroll_student(db_session, course)
        article, _ = await create_article_course(db_session, course, wiki)
        for start, end in [
            (START, START + DAY),
            (START + DAY, START + DAY + timedelta(hours=12)),
        ]:
            db_session.add(
                ArticleCourseTimeslice(
                    article_id=article.id, course_id=course.id, start=start, end=end
                )
            )
            db_session.add(
                CourseUserWikiTimeslice(
                    course_id=course.id, user_id=user.id, wiki_id=wiki.id, start=start, end=end
                )
            )
        await db_session.flush()
        grid = build_windows(START, START + 2 * DAY, 86400)

        articles_deleted = await ArticleCourseTimesliceRepository(db_session).delete_misaligned(
            course.id, wiki.id, grid
        )
        users_deleted = await CourseUserWikiTimesliceRepository(db_session).delete_misaligned(
            course.id, wiki.id, grid
        )

        assert (articles_deleted, users_deleted) == (1, 1)
        (kept,) = await ArticleCourseTimesliceRepository(db_session).get_for_course(course.id)
        assert kept.start == START

    async def test_get_or_build_reuses_aligned_row(self, db_session, course, wiki):
        article, _ = await create_article_course(db_session, course, wiki)
        repo = ArticleCourseTimesliceRepository(db_session)
        window = Window(START, START + DAY)

        first = await repo.get_or_build(article.id, course.id, window)
        await db_session.flush()
        second = await repo.get_or_build(article.id, course.id, window)

        assert first is second
        assert first.revision_count == 0


class TestArticleRepositories:
    async def test_get_or_create_article_is_idempotent(self, db_session, wiki):
        repo = ArticleRepository(db_session)

        first = await repo.get_or_create(wiki.id, 500, "Selfie")
        second = await repo.get_or_create(wiki.id, 500, "Selfie (photography)")

        assert first.id == second.id
        assert second.title == "Selfie (photography)"

    async def test_untracked_article_ids(self, db_session, course, wiki):
        await create_article_course(db_session, course, wiki)
        untracked, _ = await create_article_course(db_session, course, wiki, tracked=False)

        ids = await ArticleCourseRepository(db_session).get_untracked_article_ids(course.id)

        assert ids == {untracked.id}


class TestCourseRepositories:
    async def test_multilingual_wiki_lookup(self, db_session):
        repo = WikiRepository(db_session)

        first = await repo.get_or_create("wikidata")
        second = await repo.get_or_create("wikidata")

        assert first.id == second.id
        assert first.domain == "www.wikidata.org"

    async def test_students_map_usernames_to_ids(self, db_session, course):
        user = await enroll_student(db_session, course, "Ragesoss")

        students = await CourseRepository(db_session).get_students(course.id)

        assert students == {"Ragesoss": user.id}


class TestUpdateRunRepository:
    async def test_longest_update_time(self, db_session, course):
        started = datetime(2018, 11, 25, 12)
        for seconds in (30, 400, 90):
            await create_async(
                CourseUpdateRunFactory,
                db_session,
                course_id=course.id,
                started_at=started,
                ended_at=started + timedelta(seconds=seconds),
            )

        longest = await UpdateRunRepository(db_session).longest_update_time(course.id)

        assert longest == 400

    async def test_no_runs(self, db_session, course):
        assert await UpdateRunRepository(db_session).longest_update_time(course.id) is None
