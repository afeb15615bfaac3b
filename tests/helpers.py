# ABOUTME: Test doubles shared across the suite: a controllable clock and a canned adapter.
# ABOUTME: Also builds RawItem instances with sensible defaults.

from datetime import UTC, datetime, timedelta

from content_pulse.db.models import Source
from content_pulse.models import RawItem


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeAdapter:
    """Adapter returning canned items (or raising) per source id."""

    def __init__(self, results: dict | None = None):
        self.results = results or {}
        self.calls: list[int] = []

    async def fetch(self, source: Source) -> list[RawItem]:
        self.calls.append(source.id)
        result = self.results.get(source.id, [])
        if isinstance(result, Exception):
            raise result
        return list(result)


def make_item(source_id: int = 1, n: int = 1, **overrides) -> RawItem:
    data = {
        "title": f"Local story number {n}",
        "body_summary": f"Summary of story {n}.",
        "canonical_url": f"https://news.example.com/story-{source_id}-{n}",
        "published_at": datetime(2026, 2, 8, 11, 0, tzinfo=UTC),
        "source_id": source_id,
    }
    data.update(overrides)
    return RawItem(**data)


def make_source(source_id: int = 1, **overrides) -> Source:
    """Unsaved source for tests that never touch the database."""
    data = {
        "id": source_id,
        "name": f"Source {source_id}",
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
    return Source(**data)
