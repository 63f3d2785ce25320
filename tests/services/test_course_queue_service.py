"""Tests for course queue sorting and the scheduled update cycle."""

from datetime import datetime, timedelta

import pytest

from core.config import Settings
from repositories.update_run_repository import UpdateRunRepository
from services.course_queue_service import (
    CourseNotFoundError,
    CourseQueueSorter,
    UpdateQueue,
    run_course_update,
    run_update_cycle,
)
from services.revision_scorer import NullRevisionScorer
from services.timeslice_manager import TimesliceConfigurationError
from tests.factories import (
    CourseFactory,
    CourseUpdateRunFactory,
    WikiFactory,
    create_async,
    track_wiki,
)

STARTED = datetime(2018, 11, 25, 12)


async def record_run(db, course, seconds: int):
    return await create_async(
        CourseUpdateRunFactory,
        db,
        course_id=course.id,
        started_at=STARTED,
        ended_at=STARTED + timedelta(seconds=seconds),
    )


@pytest.mark.unit
class TestQueueForDuration:
    @pytest.mark.parametrize(
        ("seconds", "queue"),
        [
            (None, UpdateQueue.SHORT),
            (30, UpdateQueue.SHORT),
            (120, UpdateQueue.MEDIUM),
            (899, UpdateQueue.MEDIUM),
            (900, UpdateQueue.LONG),
            (7200, UpdateQueue.LONG),
        ],
    )
    def test_thresholds(self, seconds, queue):
        assert CourseQueueSorter.queue_for_duration(seconds) == queue


@pytest.mark.integration
class TestCourseQueueSorter:
    async def test_uses_longest_recent_run(self, db_session):
        course = await create_async(CourseFactory, db_session)
        await record_run(db_session, course, 30)
        await record_run(db_session, course, 1000)

        assert await CourseQueueSorter(db_session).queue_for(course.id) == UpdateQueue.LONG

    async def test_orders_short_queue_first(self, db_session):
        slow = await create_async(CourseFactory, db_session)
        medium = await create_async(CourseFactory, db_session)
        fresh = await create_async(CourseFactory, db_session)
        await record_run(db_session, slow, 2000)
        await record_run(db_session, medium, 300)

        order = await CourseQueueSorter(db_session).order([slow.id, medium.id, fresh.id])

        assert order == [fresh.id, medium.id, slow.id]


@pytest.mark.integration
class TestRunCourseUpdate:
    async def test_unknown_course_raises(self, session_maker, wiki_client):
        with pytest.raises(CourseNotFoundError):
            await run_course_update(
                session_maker, 404, scorer=NullRevisionScorer(), client=wiki_client
            )

    async def test_commits_run(self, session_maker, wiki_client):
        async with session_maker() as db:
            course = await create_async(CourseFactory, db)
            await track_wiki(db, course, await create_async(WikiFactory, db))
            await db.commit()

        summary = await run_course_update(
            session_maker, course.id, scorer=NullRevisionScorer(), client=wiki_client
        )

        assert summary.course_id == course.id
        async with session_maker() as db:
            runs = await UpdateRunRepository(db).get_recent(course.id)
        assert len(runs) == 1

    async def test_invalid_configuration_keeps_failed_run(self, session_maker, wiki_client):
        async with session_maker() as db:
            course = await create_async(
                CourseFactory, db, flags={"timeslice_duration": {"default": 0}}
            )
            await track_wiki(db, course, await create_async(WikiFactory, db))
            await db.commit()

        with pytest.raises(TimesliceConfigurationError):
            await run_course_update(
                session_maker, course.id, scorer=NullRevisionScorer(), client=wiki_client
            )

        async with session_maker() as db:
            runs = await UpdateRunRepository(db).get_recent(course.id)
        assert [run.failed for run in runs] == [True]


@pytest.mark.integration
class TestRunUpdateCycle:
    async def test_updates_current_courses_and_skips_invalid_ones(
        self, session_maker, wiki_client
    ):
        async with session_maker() as db:
            wiki = await create_async(WikiFactory, db)
            good = await create_async(CourseFactory, db)
            bad = await create_async(
                CourseFactory, db, flags={"timeslice_duration": {"default": -10}}
            )
            future = await create_async(
                CourseFactory,
                db,
                start=datetime(2999, 1, 1),
                end=datetime(2999, 2, 1),
            )
            for course in (good, bad, future):
                await track_wiki(db, course, wiki)
            await db.commit()

        summaries = await run_update_cycle(
            session_maker,
            scorer=NullRevisionScorer(),
            settings=Settings(course_concurrency=1),
            client=wiki_client,
        )

        assert [summary.course_id for summary in summaries] == [good.id]
