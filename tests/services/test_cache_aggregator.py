"""Tests for CacheAggregator window folds and course rollups."""

from datetime import datetime

import pytest

from models import Namespace
from repositories.article_repository import ArticleCourseRepository
from repositories.course_repository import CourseRepository
from repositories.timeslice_repository import (
    ArticleCourseTimesliceRepository,
    CourseUserWikiTimesliceRepository,
    CourseWikiTimesliceRepository,
)
from schemas import Revision
from services.cache_aggregator import AggregationError, CacheAggregator, characters_added
from services.timeslice_manager import TimesliceManager
from tests.factories import (
    CourseFactory,
    WikiFactory,
    create_article_course,
    create_async,
    enroll_student,
    track_wiki,
)

pytestmark = pytest.mark.integration


def revision(article, user, date, rev_id=1, **kwargs) -> Revision:
    return Revision(
        mw_rev_id=rev_id,
        mw_page_id=article.mw_page_id,
        wiki_id=article.wiki_id,
        username=user.username,
        date=date,
        article_id=article.id,
        user_id=user.id,
        **kwargs,
    )


async def article_slices_of(db, course):
    return await ArticleCourseTimesliceRepository(db).get_for_course(course.id)


async def user_slices_of(db, course):
    return await CourseUserWikiTimesliceRepository(db).get_for_course(course.id)


class RecordingCache:
    def __init__(self):
        self.invalidated = []

    async def invalidate(self, course):
        self.invalidated.append(course.id)


@pytest.fixture
async def setup(db_session):
    course = await create_async(CourseFactory, db_session)
    wiki = await create_async(WikiFactory, db_session)
    await track_wiki(db_session, course, wiki)
    alice = await enroll_student(db_session, course, "Alice")
    bob = await enroll_student(db_session, course, "Bob")
    await TimesliceManager(db_session, course).reconcile()
    grid = await CourseWikiTimesliceRepository(db_session).get_grid(course.id, wiki.id)
    article, _ = await create_article_course(db_session, course, wiki)
    return course, wiki, grid, article, alice, bob


class TestCharactersAdded:
    def _rev(self, characters: int, **kwargs) -> Revision:
        return Revision(
            mw_rev_id=1,
            mw_page_id=1,
            wiki_id=1,
            username="A",
            date=datetime(2018, 11, 24),
            characters=characters,
            **kwargs,
        )

    def test_positive_delta(self):
        assert characters_added(self._rev(120)) == 120

    def test_removals_count_as_zero(self):
        assert characters_added(self._rev(-40)) == 0

    def test_system_edits_add_no_characters(self):
        assert characters_added(self._rev(500, system=True)) == 0


class TestApplyRevisions:
    async def test_folds_into_article_user_and_window_caches(self, db_session, setup):
        course, wiki, grid, article, alice, bob = setup
        window = grid[2]
        revisions = [
            revision(article, alice, datetime(2018, 11, 26, 9), 1, characters=100, references=2),
            revision(article, alice, datetime(2018, 11, 26, 10), 2, characters=-30),
            revision(article, bob, datetime(2018, 11, 26, 11), 3, characters=50, new_article=True),
        ]
        aggregator = CacheAggregator(db_session, course)

        folded = await aggregator.apply_revisions(window, {article.id: revisions})

        assert folded == 3
        article_slices = await article_slices_of(db_session, course)
        assert len(article_slices) == 1
        article_slice = article_slices[0]
        assert (article_slice.start, article_slice.end) == (window.start, window.end)
        assert article_slice.revision_count == 3
        assert article_slice.character_sum == 150
        assert article_slice.references_count == 2
        assert article_slice.user_ids == sorted([alice.id, bob.id])
        assert article_slice.new_article is True

        user_slices = {s.user_id: s for s in await user_slices_of(db_session, course)}
        assert user_slices[alice.id].revision_count == 2
        assert user_slices[alice.id].character_sum_ms == 100
        assert user_slices[bob.id].character_sum_ms == 50
        assert user_slices[bob.id].wiki_id == wiki.id

        assert window.revision_count == 3
        assert window.character_sum == 150
        assert window.references_count == 2

    async def test_second_batch_adds_to_existing_caches(self, db_session, setup):
        course, _, grid, article, alice, _ = setup
        aggregator = CacheAggregator(db_session, course)
        await aggregator.apply_revisions(
            grid[2],
            {article.id: [revision(article, alice, datetime(2018, 11, 26, 9), 1, characters=100)]},
        )

        await aggregator.apply_revisions(
            grid[2],
            {article.id: [revision(article, alice, datetime(2018, 11, 26, 15), 2, characters=20)]},
        )

        article_slices = await article_slices_of(db_session, course)
        assert len(article_slices) == 1
        assert article_slices[0].revision_count == 2
        assert article_slices[0].character_sum == 120

    async def test_splits_user_characters_by_namespace(self, db_session, setup):
        course, _, grid, article, alice, _ = setup
        day = datetime(2018, 11, 26, 9)
        revisions = [
            revision(article, alice, day, 1, characters=10, namespace=Namespace.MAINSPACE),
            revision(article, alice, day, 2, characters=20, namespace=Namespace.USER),
            revision(article, alice, day, 3, characters=40, namespace=Namespace.DRAFT),
            revision(article, alice, day, 4, characters=80, namespace=1),
        ]

        await CacheAggregator(db_session, course).apply_revisions(grid[2], {article.id: revisions})

        (user_slice,) = await user_slices_of(db_session, course)
        assert user_slice.character_sum_ms == 10
        assert user_slice.character_sum_us == 20
        assert user_slice.character_sum_draft == 40
        assert user_slice.revision_count == 4

    async def test_system_edits_count_as_revisions_only(self, db_session, setup):
        course, _, grid, article, alice, _ = setup
        revisions = [
            revision(article, alice, datetime(2018, 11, 26, 9), 1, characters=500, system=True),
        ]

        await CacheAggregator(db_session, course).apply_revisions(grid[2], {article.id: revisions})

        (article_slice,) = await article_slices_of(db_session, course)
        assert article_slice.revision_count == 1
        assert article_slice.character_sum == 0

    async def test_empty_batch_writes_nothing(self, db_session, setup):
        course, _, grid, _, _, _ = setup

        folded = await CacheAggregator(db_session, course).apply_revisions(grid[2], {})

        assert folded == 0
        assert await article_slices_of(db_session, course) == []

    async def test_revision_outside_window_rejects_whole_batch(self, db_session, setup):
        course, _, grid, article, alice, _ = setup
        revisions = [
            revision(article, alice, datetime(2018, 11, 26, 9), 1),
            revision(article, alice, datetime(2018, 11, 27), 2),
        ]

        aggregator = CacheAggregator(db_session, course)

        with pytest.raises(AggregationError) as exc_info:
            await aggregator.apply_revisions(grid[2], {article.id: revisions})

        assert exc_info.value.course_id == course.id
        assert await article_slices_of(db_session, course) == []
        assert grid[2].revision_count == 0

    async def test_unresolved_user_is_rejected(self, db_session, setup):
        course, _, grid, article, alice, _ = setup
        rev = revision(article, alice, datetime(2018, 11, 26, 9))
        rev = rev.model_copy(update={"user_id": None})

        with pytest.raises(AggregationError, match="no author"):
            await CacheAggregator(db_session, course).apply_revisions(grid[2], {article.id: [rev]})

    async def test_revision_filed_under_wrong_article_is_rejected(self, db_session, setup):
        course, _, grid, article, alice, _ = setup
        rev = revision(article, alice, datetime(2018, 11, 26, 9))

        with pytest.raises(AggregationError, match="not resolved"):
            await CacheAggregator(db_session, course).apply_revisions(
                grid[2], {article.id + 1: [rev]}
            )


class TestRollUpCourseCache:
    async def test_recomputes_totals_from_window_caches(self, db_session, setup):
        course, wiki, grid, article, alice, bob = setup
        other, _ = await create_article_course(db_session, course, wiki)
        aggregator = CacheAggregator(db_session, course)
        await aggregator.apply_revisions(
            grid[0],
            {
                article.id: [
                    revision(
                        article, alice, datetime(2018, 11, 24, 9), 1, characters=100, new_article=True
                    )
                ]
            },
        )
        await aggregator.apply_revisions(
            grid[3],
            {
                article.id: [revision(article, alice, datetime(2018, 11, 27, 9), 2, characters=10)],
                other.id: [
                    revision(other, alice, datetime(2018, 11, 27, 10), 3, characters=5, references=1)
                ],
            },
        )

        await aggregator.roll_up_course_cache()

        articles_courses = {
            ac.article_id: ac
            for ac in await ArticleCourseRepository(db_session).get_for_course(course.id)
        }
        assert articles_courses[article.id].revision_count == 2
        assert articles_courses[article.id].character_sum == 110
        assert articles_courses[article.id].new_article is True
        assert articles_courses[other.id].references_count == 1

        course_users = {
            cu.user_id: cu for cu in await CourseRepository(db_session).get_course_users(course.id)
        }
        assert course_users[alice.id].revision_count == 3
        assert course_users[alice.id].character_sum_ms == 115
        assert course_users[bob.id].revision_count == 0

        assert course.revision_count == 3
        assert course.character_sum == 115
        assert course.references_count == 1
        assert course.article_count == 2
        assert course.new_article_count == 1
        assert course.user_count == 1
        assert course.cache_updated_at is not None

    async def test_untracked_articles_are_left_out_of_course_totals(self, db_session, setup):
        course, wiki, grid, article, alice, _ = setup
        hidden, _ = await create_article_course(db_session, course, wiki, tracked=False)
        aggregator = CacheAggregator(db_session, course)
        await aggregator.apply_revisions(
            grid[1],
            {
                article.id: [revision(article, alice, datetime(2018, 11, 25, 9), 1, characters=10)],
                hidden.id: [revision(hidden, alice, datetime(2018, 11, 25, 10), 2, characters=90)],
            },
        )

        await aggregator.roll_up_course_cache()

        assert course.character_sum == 10
        assert course.article_count == 1

    async def test_rollup_is_repeatable(self, db_session, setup):
        course, _, grid, article, alice, _ = setup
        aggregator = CacheAggregator(db_session, course)
        await aggregator.apply_revisions(
            grid[1],
            {article.id: [revision(article, alice, datetime(2018, 11, 25, 9), characters=10)]},
        )

        await aggregator.roll_up_course_cache()
        await aggregator.roll_up_course_cache()

        assert course.revision_count == 1
        assert course.character_sum == 10

    async def test_new_article_flag_follows_remaining_windows(self, db_session, setup):
        course, wiki, grid, article, alice, _ = setup
        aggregator = CacheAggregator(db_session, course)
        await aggregator.apply_revisions(
            grid[3],
            {
                article.id: [
                    revision(article, alice, datetime(2018, 11, 27, 9), new_article=True)
                ]
            },
        )
        await aggregator.roll_up_course_cache()
        (article_course,) = await ArticleCourseRepository(db_session).get_for_course(course.id)
        assert article_course.new_article is True

        # Window resized away
        await ArticleCourseTimesliceRepository(db_session).delete_misaligned(
            course.id, wiki.id, []
        )
        await aggregator.roll_up_course_cache()

        assert article_course.new_article is False
        assert course.new_article_count == 0

    async def test_invalidates_structural_completeness(self, db_session, setup):
        course, *_ = setup
        cache = RecordingCache()

        aggregator = CacheAggregator(db_session, course, structural_completeness=cache)

        await aggregator.roll_up_course_cache()

        assert cache.invalidated == [course.id]
