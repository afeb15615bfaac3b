# ABOUTME: SQLAlchemy implementations of the content store, source registry and settings store.
# ABOUTME: Every call runs in its own session so each record write or delete is atomic.

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_pulse.config import Settings, get_settings
from content_pulse.db.models import ContentRecord, IngestionSettings, Source
from content_pulse.errors import (
    ConfigError,
    DuplicateRecordError,
    StoreError,
    StoreUnavailableError,
)
from content_pulse.models import ContentType, RetentionPolicy

log = structlog.get_logger()

SettingsListener = Callable[[ContentType, RetentionPolicy | None, RetentionPolicy], Awaitable[None]]


def _filtered(query, filters: dict[str, Any]):
    for field, value in filters.items():
        column = getattr(ContentRecord, field, None)
        if column is None:
            raise ValueError(f"unknown content record field: {field}")
        query = query.where(column == value)
    return query


class SqlContentStore:
    """Content store over the ``content_records`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find(self, **filters: Any) -> list[ContentRecord]:
        """Return matching records, newest ``created_at`` first."""
        query = _filtered(select(ContentRecord), filters).order_by(
            ContentRecord.created_at.desc(), ContentRecord.id.desc()
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailableError(f"content store unreachable: {e}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"content store read failed: {e}") from e

    async def count(self, **filters: Any) -> int:
        query = _filtered(select(func.count(ContentRecord.id)), filters)
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return int(result.scalar_one())
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailableError(f"content store unreachable: {e}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"content store count failed: {e}") from e

    async def create(self, data: dict[str, Any]) -> ContentRecord:
        """Insert one record. Raises DuplicateRecordError on a canonical URL clash."""
        record = ContentRecord(**data)
        try:
            async with self._session_factory() as session:
                session.add(record)
                await session.commit()
        except IntegrityError as e:
            raise DuplicateRecordError(f"duplicate canonical url: {data.get('canonical_url')}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"content store write failed: {e}") from e
        return record

    async def update(self, record_id: int, data: dict[str, Any]) -> ContentRecord:
        try:
            async with self._session_factory() as session:
                record = await session.get(ContentRecord, record_id)
                if record is None:
                    raise StoreError(f"content record {record_id} not found")
                for field, value in data.items():
                    setattr(record, field, value)
                await session.commit()
                return record
        except IntegrityError as e:
            raise DuplicateRecordError(f"update of {record_id} violates uniqueness") from e
        except SQLAlchemyError as e:
            raise StoreError(f"content store update failed: {e}") from e

    async def delete(self, record_id: int) -> None:
        try:
            async with self._session_factory() as session:
                record = await session.get(ContentRecord, record_id)
                if record is None:
                    return
                await session.delete(record)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"content store delete of {record_id} failed: {e}") from e


class SqlSourceRegistry:
    """Read-only view of the ``sources`` table for the scheduler."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_active_sources(self, content_type: ContentType | None = None) -> list[Source]:
        query = select(Source).where(Source.is_active.is_(True))
        if content_type is not None:
            query = query.where(Source.content_type == content_type.value)
        query = query.order_by(Source.priority, Source.id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailableError(f"source registry unreachable: {e}") from e


class SqlSettingsStore:
    """Runtime settings, one ``ingestion_settings`` row per content type.

    Missing rows fall back to the process defaults in ``Settings``. Every
    ``update_settings`` call notifies registered listeners with the previous
    and current retention policy.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._listeners: list[SettingsListener] = []

    def add_listener(self, listener: SettingsListener) -> None:
        """Listeners are awaited in order inside ``update_settings`` and must not block.

        ``previous`` is None when the stored row was malformed before the update.
        """
        self._listeners.append(listener)

    @asynccontextmanager
    async def _session(self, action: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailableError(f"settings store unreachable: {e}") from e
        except SQLAlchemyError as e:
            raise StoreError(f"settings store {action} failed: {e}") from e

    async def _load_row(self, content_type: ContentType) -> IngestionSettings | None:
        async with self._session("read") as session:
            return await session.get(IngestionSettings, content_type.value)

    def _defaults(self, content_type: ContentType) -> IngestionSettings:
        return IngestionSettings(
            content_type=content_type.value,
            max_item_count=self._settings.default_max_item_count,
            max_age_hours=None,
            preserve_pinned=True,
            preserve_featured=True,
            cleanup_frequency_minutes=self._settings.default_cleanup_frequency_minutes,
            moderation_keywords=list(self._settings.default_moderation_keywords),
            auto_moderation_enabled=True,
            detect_breaking=False,
        )

    def _policy_from(self, content_type: ContentType, row: IngestionSettings) -> RetentionPolicy:
        try:
            return RetentionPolicy(
                max_item_count=row.max_item_count,
                max_age_hours=row.max_age_hours,
                preserve_pinned=row.preserve_pinned,
                preserve_featured=row.preserve_featured,
                cleanup_frequency_minutes=row.cleanup_frequency_minutes,
            )
        except ValidationError as e:
            raise ConfigError(content_type.value, f"invalid retention policy: {e}") from e

    async def get_retention_policy(self, content_type: ContentType) -> RetentionPolicy:
        row = await self._load_row(content_type) or self._defaults(content_type)
        return self._policy_from(content_type, row)

    async def get_moderation_denylist(self, content_type: ContentType) -> list[str]:
        row = await self._load_row(content_type) or self._defaults(content_type)
        keywords = row.moderation_keywords or []
        if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
            raise ConfigError(content_type.value, "moderation_keywords must be a list of strings")
        return [k for k in keywords if k.strip()]

    async def get_auto_moderation(self, content_type: ContentType) -> bool:
        row = await self._load_row(content_type) or self._defaults(content_type)
        return bool(row.auto_moderation_enabled)

    async def get_detect_breaking(self, content_type: ContentType) -> bool:
        row = await self._load_row(content_type) or self._defaults(content_type)
        return bool(row.detect_breaking)

    async def update_settings(self, content_type: ContentType, **changes: Any) -> RetentionPolicy:
        """Apply changes to one content type's row and notify listeners."""
        async with self._session("update") as session:
            row = await session.get(IngestionSettings, content_type.value)
            if row is None:
                row = self._defaults(content_type)
                session.add(row)
            try:
                previous = self._policy_from(content_type, row)
            except ConfigError:
                # A malformed row can still be corrected here.
                previous = None
            for field, value in changes.items():
                if not hasattr(IngestionSettings, field) or field == "content_type":
                    raise ValueError(f"unknown settings field: {field}")
                setattr(row, field, value)
            current = self._policy_from(content_type, row)
            await session.commit()

        log.info(
            "settings_updated",
            content_type=content_type.value,
            fields=sorted(changes),
            max_item_count=current.max_item_count,
        )
        for listener in self._listeners:
            await listener(content_type, previous, current)
        return current
