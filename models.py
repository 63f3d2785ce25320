"""SQLAlchemy models for course revision timeslices."""

from datetime import UTC, datetime
from enum import IntEnum

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from core.database import Base


def utcnow() -> datetime:
    """Return current UTC time.

    Timeslice boundaries and revision timestamps are stored as naive UTC so
    they compare the same way on PostgreSQL and SQLite.
    """
    return datetime.now(UTC).replace(tzinfo=None)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(DateTime, default=utcnow)

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Namespace(IntEnum):
    """MediaWiki namespaces the course statistics distinguish."""

    MAINSPACE = 0
    USER = 2
    DRAFT = 118


class CourseRole(IntEnum):
    STUDENT = 0
    INSTRUCTOR = 1
    CAMPUS_VOLUNTEER = 2
    ONLINE_VOLUNTEER = 3
    WIKI_ED_STAFF = 4


class Wiki(TimestampMixin, Base):
    """A wiki project, optionally language-specific.

    Multilingual projects (wikidata, commons, ...) have no language.
    """

    __tablename__ = "wikis"
    __table_args__ = (
        UniqueConstraint("language", "project", name="uq_wikis_language_project"),
    )

    MULTILINGUAL_PROJECTS = {
        "wikidata": "www.wikidata.org",
        "wikisource": "wikisource.org",
        "wikimedia": "commons.wikimedia.org",
    }

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    project: Mapped[str] = mapped_column(String(32), nullable=False)

    @property
    def domain(self) -> str:
        if self.language is None:
            return self.MULTILINGUAL_PROJECTS.get(self.project, f"{self.project}.org")
        return f"{self.language}.{self.project}.org"

    @property
    def api_url(self) -> str:
        return f"https://{self.domain}/w/api.php"

    def __repr__(self) -> str:
        return f"<Wiki {self.domain}>"


class Course(TimestampMixin, Base):
    """A course whose students' edits are tracked over [start, end)."""

    __tablename__ = "courses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # timeslice_duration overrides, debug_updates, tracked namespaces
    flags: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    needs_update: Mapped[bool] = mapped_column(Boolean, default=False)

    # Whole-course rollup, recomputed from article course caches
    character_sum: Mapped[int] = mapped_column(Integer, default=0)
    references_count: Mapped[int] = mapped_column(Integer, default=0)
    revision_count: Mapped[int] = mapped_column(Integer, default=0)
    article_count: Mapped[int] = mapped_column(Integer, default=0)
    new_article_count: Mapped[int] = mapped_column(Integer, default=0)
    user_count: Mapped[int] = mapped_column(Integer, default=0)
    cache_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )

    course_wikis: Mapped[list["CourseWiki"]] = relationship(
        back_populates="course",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    update_runs: Mapped[list["CourseUpdateRun"]] = relationship(
        back_populates="course",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def debug_updates(self) -> bool:
        return bool((self.flags or {}).get("debug_updates"))

    def __repr__(self) -> str:
        return f"<Course {self.slug}>"


class CourseWiki(Base):
    """A wiki tracked by a course."""

    __tablename__ = "courses_wikis"
    __table_args__ = (
        UniqueConstraint("course_id", "wiki_id", name="uq_courses_wikis"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    wiki_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wikis.id", ondelete="CASCADE"), nullable=False
    )

    course: Mapped["Course"] = relationship(back_populates="course_wikis")
    wiki: Mapped["Wiki"] = relationship(lazy="joined")


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)


class CourseUser(Base):
    """Course enrollment, with per-user totals rolled up from timeslices."""

    __tablename__ = "courses_users"
    __table_args__ = (
        UniqueConstraint("course_id", "user_id", "role", name="uq_courses_users"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[int] = mapped_column(Integer, default=CourseRole.STUDENT)

    character_sum_ms: Mapped[int] = mapped_column(Integer, default=0)
    character_sum_us: Mapped[int] = mapped_column(Integer, default=0)
    character_sum_draft: Mapped[int] = mapped_column(Integer, default=0)
    references_count: Mapped[int] = mapped_column(Integer, default=0)
    revision_count: Mapped[int] = mapped_column(Integer, default=0)

    user: Mapped["User"] = relationship(lazy="joined")


class Article(TimestampMixin, Base):
    """A page on a wiki. Created the first time a fetched revision touches it."""

    __tablename__ = "articles"
    __table_args__ = (
        UniqueConstraint("wiki_id", "mw_page_id", name="uq_articles_wiki_page"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wiki_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wikis.id", ondelete="CASCADE"), nullable=False
    )
    mw_page_id: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    namespace: Mapped[int] = mapped_column(Integer, default=Namespace.MAINSPACE)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False)


class ArticleCourse(TimestampMixin, Base):
    """Article tracked by a course, with totals rolled up from timeslices."""

    __tablename__ = "articles_courses"
    __table_args__ = (
        UniqueConstraint("article_id", "course_id", name="uq_articles_courses"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    article_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False
    )
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    tracked: Mapped[bool] = mapped_column(Boolean, default=True)
    new_article: Mapped[bool] = mapped_column(Boolean, default=False)
    character_sum: Mapped[int] = mapped_column(Integer, default=0)
    references_count: Mapped[int] = mapped_column(Integer, default=0)
    revision_count: Mapped[int] = mapped_column(Integer, default=0)
    user_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)


class CourseWikiTimeslice(TimestampMixin, Base):
    """One cell of the (course, wiki) window grid.

    ``last_mw_rev_datetime`` is the fetch cursor: the timestamp of the most
    recent revision already folded into this window's caches.
    ``last_mw_rev_id`` is that revision's id, so revisions saved later within
    the same second are still picked up.
    """

    __tablename__ = "course_wiki_timeslices"
    __table_args__ = (
        UniqueConstraint(
            "course_id", "wiki_id", "start", name="uq_course_wiki_timeslices"
        ),
        Index("ix_course_wiki_timeslices_course_wiki", "course_id", "wiki_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    wiki_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wikis.id", ondelete="CASCADE"), nullable=False
    )
    start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_mw_rev_datetime: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_mw_rev_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    needs_update: Mapped[bool] = mapped_column(Boolean, default=False)

    character_sum: Mapped[int] = mapped_column(Integer, default=0)
    references_count: Mapped[int] = mapped_column(Integer, default=0)
    revision_count: Mapped[int] = mapped_column(Integer, default=0)

    @property
    def duration(self) -> int:
        return int((self.end - self.start).total_seconds())

    def __repr__(self) -> str:
        return (
            f"<CourseWikiTimeslice course={self.course_id} wiki={self.wiki_id} "
            f"{self.start.isoformat()}..{self.end.isoformat()}>"
        )


class ArticleCourseTimeslice(TimestampMixin, Base):
    """Cached per-article statistics for one window."""

    __tablename__ = "article_course_timeslices"
    __table_args__ = (
        UniqueConstraint(
            "article_id", "course_id", "start", name="uq_article_course_timeslices"
        ),
        Index("ix_article_course_timeslices_course", "course_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    article_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False
    )
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    character_sum: Mapped[int] = mapped_column(Integer, default=0)
    references_count: Mapped[int] = mapped_column(Integer, default=0)
    revision_count: Mapped[int] = mapped_column(Integer, default=0)
    user_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    new_article: Mapped[bool] = mapped_column(Boolean, default=False)
    tracked: Mapped[bool] = mapped_column(Boolean, default=True)


class CourseUserWikiTimeslice(TimestampMixin, Base):
    """Cached per-user statistics on one wiki for one window."""

    __tablename__ = "course_user_wiki_timeslices"
    __table_args__ = (
        UniqueConstraint(
            "course_id",
            "user_id",
            "wiki_id",
            "start",
            name="uq_course_user_wiki_timeslices",
        ),
        Index("ix_course_user_wiki_timeslices_course_wiki", "course_id", "wiki_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    wiki_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("wikis.id", ondelete="CASCADE"), nullable=False
    )
    start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    character_sum_ms: Mapped[int] = mapped_column(Integer, default=0)
    character_sum_us: Mapped[int] = mapped_column(Integer, default=0)
    character_sum_draft: Mapped[int] = mapped_column(Integer, default=0)
    references_count: Mapped[int] = mapped_column(Integer, default=0)
    revision_count: Mapped[int] = mapped_column(Integer, default=0)


class CourseUpdateRun(Base):
    """Completion log for one course update run."""

    __tablename__ = "course_update_runs"
    __table_args__ = (
        Index("ix_course_update_runs_course_started", "course_id", "started_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    course_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[bool] = mapped_column(Boolean, default=False)
    # stage name -> ISO timestamp of stage entry
    stage_times: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    skipped_stages: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    course: Mapped["Course"] = relationship(back_populates="update_runs")

    @property
    def duration_seconds(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()
