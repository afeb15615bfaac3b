# ABOUTME: SQLAlchemy ORM models for sources, content records and runtime settings.
# ABOUTME: Defines Source, ContentRecord and IngestionSettings tables with indexes.

from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """DateTime that always comes back timezone-aware in UTC.

    SQLite drops tzinfo on storage, so naive values read back are UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class Source(Base):
    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    kind: Mapped[str] = mapped_column(String(20), default="rss")
    content_type: Mapped[str] = mapped_column(String(20), default="article")
    endpoint: Mapped[str] = mapped_column(String(2048))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    priority: Mapped[int] = mapped_column(Integer, default=100)
    fetch_interval_minutes: Mapped[int] = mapped_column(Integer, default=5)
    daily_quota: Mapped[int | None] = mapped_column(Integer)
    per_minute_quota: Mapped[int | None] = mapped_column(Integer)
    keywords: Mapped[list[str] | None] = mapped_column(JSON)
    api_key: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class ContentRecord(Base):
    __tablename__ = "content_records"
    __table_args__ = (
        Index("ix_content_records_type_created", "content_type", "created_at"),
        Index("ix_content_records_normalized_title", "normalized_title"),
        Index("ix_content_records_moderation", "moderation_status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    content_type: Mapped[str] = mapped_column(String(20), default="article")
    title: Mapped[str] = mapped_column(String(500))
    body_summary: Mapped[str | None] = mapped_column(Text)
    canonical_url: Mapped[str] = mapped_column(String(2048), unique=True)
    normalized_title: Mapped[str] = mapped_column(String(500))
    media_url: Mapped[str | None] = mapped_column(String(2048))
    author_name: Mapped[str | None] = mapped_column(String(255))
    source_id: Mapped[int | None] = mapped_column(ForeignKey("sources.id"))

    # Retention exemptions
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    is_featured: Mapped[bool] = mapped_column(Boolean, default=False)
    is_breaking: Mapped[bool] = mapped_column(Boolean, default=False)
    moderation_status: Mapped[str] = mapped_column(String(20), default="approved")

    # Timestamps
    published_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)


class IngestionSettings(Base):
    __tablename__ = "ingestion_settings"

    content_type: Mapped[str] = mapped_column(String(20), primary_key=True)
    max_item_count: Mapped[int | None] = mapped_column(Integer)
    max_age_hours: Mapped[int | None] = mapped_column(Integer)
    preserve_pinned: Mapped[bool] = mapped_column(Boolean, default=True)
    preserve_featured: Mapped[bool] = mapped_column(Boolean, default=True)
    cleanup_frequency_minutes: Mapped[int] = mapped_column(Integer, default=60)
    moderation_keywords: Mapped[list[str] | None] = mapped_column(JSON)
    auto_moderation_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    detect_breaking: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)
