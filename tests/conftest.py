# ABOUTME: Shared test fixtures for content-pulse.
# ABOUTME: Provides a temporary SQLite database, stores, a fake clock and fake adapters.

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_pulse.config import Settings
from content_pulse.db.models import Source
from content_pulse.db.session import create_engine_for, create_tables
from content_pulse.db.store import SqlContentStore, SqlSettingsStore, SqlSourceRegistry
from content_pulse.models import SourceKind
from content_pulse.services.engine import Engine
from helpers import FakeAdapter, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 2, 8, 12, 0, tzinfo=UTC))


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        db_path=tmp_path / "test.db",
        timezone="UTC",
        http_timeout=2,
        default_max_item_count=100,
    )


@pytest.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """File-backed SQLite so every store call can open its own connection."""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> SqlContentStore:
    return SqlContentStore(session_factory)


@pytest.fixture
def registry(session_factory) -> SqlSourceRegistry:
    return SqlSourceRegistry(session_factory)


@pytest.fixture
def settings_store(session_factory, test_settings) -> SqlSettingsStore:
    return SqlSettingsStore(session_factory, test_settings)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def engine(session_factory, test_settings, fake_adapter, clock) -> Engine:
    adapters = {kind: fake_adapter for kind in SourceKind}
    return Engine(session_factory, test_settings, adapters=adapters, clock=clock)


@pytest.fixture
def add_source(session_factory):
    """Insert a source row and return it."""

    async def _add(**overrides) -> Source:
        data = {
            "name": "Test Feed",
            "kind": "rss",
            "content_type": "article",
            "endpoint": "https://news.example.com/feed.xml",
            "is_active": True,
            "priority": 10,
            "fetch_interval_minutes": 5,
            "daily_quota": None,
            "per_minute_quota": None,
            "keywords": None,
            "api_key": None,
        }
        data.update(overrides)
        source = Source(**data)
        async with session_factory() as session:
            session.add(source)
            await session.commit()
        return source

    return _add


@pytest.fixture
def add_record(store, clock):
    """Insert a content record; ``age_minutes`` backdates created_at."""

    async def _add(n: int, age_minutes: int = 0, content_type: str = "article", **overrides):
        created = clock() - timedelta(minutes=age_minutes)
        data = {
            "content_type": content_type,
            "title": f"Stored story {n}",
            "normalized_title": f"stored story {n}",
            "canonical_url": f"https://stored.example.com/{content_type}/{n}",
            "published_at": created,
            "created_at": created,
            "moderation_status": "approved",
            "body_summary": "",
            "source_id": None,
            "media_url": None,
            "author_name": None,
            "is_pinned": False,
            "is_featured": False,
            "is_breaking": False,
        }
        data.update(overrides)
        return await store.create(data)

    return _add
