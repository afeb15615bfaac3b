# ABOUTME: Pydantic schemas and enums shared by adapters, jobs and the operator API.
# ABOUTME: Defines raw fetched items, retention policy, run summaries and reconcile results.

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class SourceKind(StrEnum):
    RSS = "rss"
    SEARCH_API = "search_api"
    GENERIC_API = "generic_api"


class ContentType(StrEnum):
    ARTICLE = "article"
    VIDEO = "video"
    REVIEW = "review"


class ModerationStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    HIDDEN = "hidden"


class RunStatus(StrEnum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class RawItem(BaseModel):
    """One fetched candidate before storage. Lives only for one ingestion pass."""

    title: str
    body_summary: str = ""
    canonical_url: str
    published_at: datetime
    source_id: int
    media_url: str | None = None
    author_name: str | None = None


class RetentionPolicy(BaseModel):
    """Size and age limits for one content type."""

    max_item_count: int | None = Field(default=None, ge=0)
    max_age_hours: int | None = Field(default=None, ge=1)
    preserve_pinned: bool = True
    preserve_featured: bool = True
    cleanup_frequency_minutes: int = Field(default=60, ge=1)


class RunSummary(BaseModel):
    """Outcome of one ingestion job for one source."""

    source_id: int
    source_name: str = ""
    status: RunStatus
    seen: int = 0
    filtered: int = 0
    duplicate: int = 0
    created: int = 0
    errors: int = 0
    duration_ms: int = 0
    skip_reason: str | None = None
    error: str | None = None
    finished_at: datetime | None = None


class ReconcileResult(BaseModel):
    """Outcome of one retention reconciliation pass."""

    content_type: ContentType
    deleted_count: int
    final_count: int
    max_limit: int | None
    preserved_count: int


class SettingsUpdate(BaseModel):
    """Partial update of the runtime settings for one content type."""

    max_item_count: int | None = Field(default=None, ge=0)
    max_age_hours: int | None = Field(default=None, ge=1)
    preserve_pinned: bool | None = None
    preserve_featured: bool | None = None
    cleanup_frequency_minutes: int | None = Field(default=None, ge=1)
    moderation_keywords: list[str] | None = None
    auto_moderation_enabled: bool | None = None
    detect_breaking: bool | None = None
