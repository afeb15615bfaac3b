# ABOUTME: Tests for database models and the SQL store implementations.
# ABOUTME: Verifies source/record CRUD, URL uniqueness, UTC timestamps and settings storage.

from datetime import UTC, datetime

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from content_pulse.db.models import ContentRecord, IngestionSettings, Source
from content_pulse.db.session import create_engine_for
from content_pulse.db.store import SqlSettingsStore
from content_pulse.errors import ConfigError, DuplicateRecordError, StoreUnavailableError
from content_pulse.models import ContentType


async def test_create_source(session_factory, add_source):
    """Source can be created and retrieved."""
    await add_source(name="Pattaya News")

    async with session_factory() as session:
        result = await session.execute(select(Source))
        source = result.scalar_one()
    assert source.name == "Pattaya News"
    assert source.kind == "rss"
    assert source.is_active is True


async def test_unique_canonical_url(add_record):
    """A second record with the same canonical URL is rejected by the store."""
    await add_record(1, canonical_url="https://example.com/dup")

    with pytest.raises(DuplicateRecordError):
        await add_record(2, canonical_url="https://example.com/dup")


async def test_timestamps_come_back_aware_utc(store, add_record):
    """Aware datetimes in any zone are stored and returned as UTC."""
    from zoneinfo import ZoneInfo

    local = datetime(2026, 2, 8, 19, 0, tzinfo=ZoneInfo("Asia/Bangkok"))
    await add_record(1, published_at=local)

    [record] = await store.find()
    assert record.published_at == datetime(2026, 2, 8, 12, 0, tzinfo=UTC)
    assert record.published_at.tzinfo is not None


async def test_find_orders_newest_first_and_filters(store, add_record):
    await add_record(1, age_minutes=30)
    await add_record(2, age_minutes=10)
    await add_record(3, age_minutes=20, content_type="video")

    articles = await store.find(content_type="article")
    assert [r.title for r in articles] == ["Stored story 2", "Stored story 1"]
    assert await store.count(content_type="video") == 1


async def test_find_rejects_unknown_field(store):
    with pytest.raises(ValueError):
        await store.find(colour="red")


async def test_update_and_delete(store, add_record):
    record = await add_record(1)

    updated = await store.update(record.id, {"is_pinned": True})
    assert updated.is_pinned is True

    await store.delete(record.id)
    await store.delete(record.id)  # already gone: no-op
    assert await store.count() == 0


async def test_registry_lists_active_sources_by_priority(registry, add_source):
    await add_source(name="Low", priority=50)
    await add_source(name="High", priority=1)
    await add_source(name="Off", is_active=False)
    await add_source(name="Videos", content_type="video", kind="search_api")

    everything = await registry.list_active_sources()
    assert [s.name for s in everything] == ["High", "Videos", "Low"]

    articles = await registry.list_active_sources(ContentType.ARTICLE)
    assert [s.name for s in articles] == ["High", "Low"]


async def test_settings_defaults_without_row(settings_store, test_settings):
    policy = await settings_store.get_retention_policy(ContentType.ARTICLE)
    assert policy.max_item_count == test_settings.default_max_item_count
    assert policy.preserve_pinned is True
    assert await settings_store.get_moderation_denylist(ContentType.ARTICLE) == [
        "spam",
        "fake",
        "clickbait",
        "scam",
        "adult",
        "explicit",
    ]
    assert await settings_store.get_auto_moderation(ContentType.ARTICLE) is True
    assert await settings_store.get_detect_breaking(ContentType.ARTICLE) is False


async def test_update_settings_notifies_listeners(settings_store):
    calls = []

    async def listener(content_type, previous, current):
        calls.append((content_type, previous.max_item_count, current.max_item_count))

    settings_store.add_listener(listener)
    await settings_store.update_settings(ContentType.VIDEO, max_item_count=20)
    await settings_store.update_settings(ContentType.VIDEO, max_item_count=10)

    assert calls == [(ContentType.VIDEO, 100, 20), (ContentType.VIDEO, 20, 10)]
    policy = await settings_store.get_retention_policy(ContentType.VIDEO)
    assert policy.max_item_count == 10


async def test_update_settings_rejects_invalid_values(settings_store):
    with pytest.raises(ConfigError):
        await settings_store.update_settings(ContentType.ARTICLE, max_item_count=-1)

    policy = await settings_store.get_retention_policy(ContentType.ARTICLE)
    assert policy.max_item_count == 100


async def test_malformed_row_raises_config_error(session_factory, settings_store):
    """Rows written behind the store's back are validated on read."""
    async with session_factory() as session:
        session.add(
            IngestionSettings(
                content_type="review",
                max_item_count=-5,
                cleanup_frequency_minutes=60,
                moderation_keywords="spam",
            )
        )
        await session.commit()

    with pytest.raises(ConfigError):
        await settings_store.get_retention_policy(ContentType.REVIEW)
    with pytest.raises(ConfigError):
        await settings_store.get_moderation_denylist(ContentType.REVIEW)


async def test_malformed_row_can_be_corrected(session_factory, settings_store):
    async with session_factory() as session:
        session.add(IngestionSettings(content_type="article", max_item_count=-5))
        await session.commit()
    calls = []

    async def listener(content_type, previous, current):
        calls.append((content_type, previous, current.max_item_count))

    settings_store.add_listener(listener)
    policy = await settings_store.update_settings(ContentType.ARTICLE, max_item_count=10)

    assert policy.max_item_count == 10
    assert calls == [(ContentType.ARTICLE, None, 10)]
    assert (await settings_store.get_retention_policy(ContentType.ARTICLE)).max_item_count == 10


async def test_unreachable_settings_database(tmp_path, test_settings):
    db = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'content.db'}")
    settings_store = SqlSettingsStore(async_sessionmaker(db, expire_on_commit=False), test_settings)
    try:
        with pytest.raises(StoreUnavailableError):
            await settings_store.get_retention_policy(ContentType.ARTICLE)
        with pytest.raises(StoreUnavailableError):
            await settings_store.update_settings(ContentType.ARTICLE, max_item_count=10)
    finally:
        await db.dispose()


async def test_content_record_defaults(session_factory):
    async with session_factory() as session:
        session.add(
            ContentRecord(title="Bare", normalized_title="bare", canonical_url="https://example.com/bare")
        )
        await session.commit()
        record = (await session.execute(select(ContentRecord))).scalar_one()
    assert record.moderation_status == "approved"
    assert record.is_pinned is False
    assert record.created_at.tzinfo is not None
