"""Pydantic schemas for revisions, course flags and run summaries."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import Namespace


class Revision(BaseModel):
    """A revision pulled from a wiki.

    Immutable fact; never persisted. Only its contribution to window caches
    is kept.
    """

    model_config = ConfigDict(frozen=True)

    mw_rev_id: int
    # 0 for the first revision of a page
    mw_parent_rev_id: int = 0
    mw_page_id: int
    wiki_id: int
    username: str
    date: datetime
    title: str = ""
    namespace: int = Namespace.MAINSPACE
    # Byte delta against the parent revision
    characters: int = 0
    # References added, from the revision scorer
    references: int = 0
    new_article: bool = False
    # Bot/system edits count as revisions but not as characters added
    system: bool = False
    article_id: int | None = None
    user_id: int | None = None

    def with_ids(self, *, article_id: int, user_id: int) -> "Revision":
        return self.model_copy(update={"article_id": article_id, "user_id": user_id})

    def with_references(self, references: int) -> "Revision":
        return self.model_copy(update={"references": references})


class TimesliceDurationFlags(BaseModel):
    """The ``timeslice_duration`` entry of ``Course.flags``.

    Example: ``{"default": 43200, "www.wikidata.org": 86400}``
    """

    model_config = ConfigDict(extra="allow")

    default: int | None = None

    @field_validator("default")
    @classmethod
    def validate_default(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("timeslice duration must be positive")
        return v

    def for_domain(self, domain: str) -> int | None:
        extra = self.model_extra or {}
        value = extra.get(domain)
        if value is None:
            return self.default
        value = int(value)
        if value <= 0:
            raise ValueError(f"timeslice duration for {domain} must be positive")
        return value


class UpdateRunSummary(BaseModel):
    """Result of one course update run."""

    model_config = ConfigDict(from_attributes=True)

    course_id: int
    started_at: datetime
    ended_at: datetime | None = None
    error_count: int = 0
    failed: bool = False
    stage_times: dict[str, str] = Field(default_factory=dict)
    skipped_stages: list[str] = Field(default_factory=list)
    revision_count: int = 0
