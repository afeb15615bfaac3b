# ABOUTME: Tests for periodic triggers and the day/night video cadence.
# ABOUTME: Drives ticks by hand with a fake clock instead of sleeping.

from datetime import UTC, datetime, timedelta

import pytest

from content_pulse.errors import StoreUnavailableError
from content_pulse.models import ContentType
from content_pulse.services.scheduler import PeriodicTrigger, Scheduler
from helpers import make_item


@pytest.fixture
def scheduler(engine) -> Scheduler:
    return Scheduler(engine)


def _trigger(scheduler: Scheduler, name: str) -> PeriodicTrigger:
    return next(t for t in scheduler.triggers if t.name == name)


def test_builds_one_trigger_per_concern(scheduler):
    assert [t.name for t in scheduler.triggers] == [
        "news",
        "video",
        "reviews",
        "settings-poll",
        "retention-article",
        "retention-video",
        "retention-review",
    ]


@pytest.mark.parametrize(
    ("hour", "minute", "night"),
    [(22, 59, False), (23, 0, True), (2, 30, True), (5, 59, True), (6, 0, False), (12, 0, False)],
)
def test_night_band_wraps_midnight(scheduler, hour, minute, night):
    assert scheduler.is_night(datetime(2026, 2, 8, hour, minute, tzinfo=UTC)) is night


def test_night_band_uses_configured_timezone(engine, test_settings):
    bangkok = test_settings.model_copy(update={"timezone": "Asia/Bangkok"})
    scheduler = Scheduler(engine, bangkok)
    # 17:00 UTC is midnight in Bangkok.
    assert scheduler.is_night(datetime(2026, 2, 8, 17, 0, tzinfo=UTC))
    assert not scheduler.is_night(datetime(2026, 2, 8, 0, 0, tzinfo=UTC))


def test_video_cadence_switches_without_restart(scheduler):
    video = _trigger(scheduler, "video")
    video.last_run = datetime(2026, 2, 8, 22, 20, tzinfo=UTC)

    assert video.is_due(datetime(2026, 2, 8, 22, 50, tzinfo=UTC))
    # Same elapsed time, but the night band now applies.
    video.last_run = datetime(2026, 2, 8, 23, 0, tzinfo=UTC)
    assert not video.is_due(datetime(2026, 2, 8, 23, 30, tzinfo=UTC))
    assert video.is_due(datetime(2026, 2, 9, 1, 0, tzinfo=UTC))
    assert scheduler.video_interval(datetime(2026, 2, 8, 12, 0, tzinfo=UTC)) == timedelta(minutes=30)


async def test_tick_runs_only_when_due(scheduler, engine, fake_adapter, add_source, clock, store):
    source = await add_source()
    fake_adapter.results[source.id] = [make_item(source.id, 1)]
    news = _trigger(scheduler, "news")

    assert await scheduler.tick(news)
    assert not await scheduler.tick(news)
    clock.advance(minutes=5)
    assert await scheduler.tick(news)

    assert news.runs == 2
    assert fake_adapter.calls == [source.id, source.id]
    assert await store.count() == 1


async def test_source_cadence_is_respected(scheduler, fake_adapter, add_source, clock):
    slow = await add_source(name="Slow", fetch_interval_minutes=30)
    fast = await add_source(name="Fast", fetch_interval_minutes=5)
    news = _trigger(scheduler, "news")

    await scheduler.tick(news)
    clock.advance(minutes=5)
    await scheduler.tick(news)

    assert fake_adapter.calls.count(slow.id) == 1
    assert fake_adapter.calls.count(fast.id) == 2


async def test_triggers_only_fetch_their_content_type(scheduler, fake_adapter, add_source):
    article = await add_source(name="News", content_type="article")
    video = await add_source(name="Clips", kind="search_api", content_type="video")

    await scheduler.tick(_trigger(scheduler, "video"))

    assert fake_adapter.calls == [video.id]
    assert article.id not in fake_adapter.calls


async def test_halted_engine_skips_ticks(scheduler, engine, fake_adapter, add_source):
    await add_source()
    engine.halt("database is locked")

    assert not await scheduler.tick(_trigger(scheduler, "news"))
    assert fake_adapter.calls == []

    engine.resume()
    assert await scheduler.tick(_trigger(scheduler, "news"))


async def test_unreachable_store_halts_scheduling(scheduler, engine, add_source, monkeypatch):
    await add_source()

    async def unreachable(*args, **kwargs):
        raise StoreUnavailableError("unable to open database file")

    monkeypatch.setattr(engine.registry, "list_active_sources", unreachable)

    assert await scheduler.tick(_trigger(scheduler, "news"))
    assert engine.halted
    assert "unable to open" in engine.status()["halted_reason"]


async def test_trigger_errors_do_not_escape(scheduler, engine, monkeypatch):
    async def broken(content_type):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(engine, "scheduled_reconciliation", broken)

    assert await scheduler.tick(_trigger(scheduler, "retention-article"))
    assert not engine.halted


async def test_retention_trigger_follows_cleanup_frequency(scheduler, engine, clock):
    await engine.settings_store.update_settings(ContentType.ARTICLE, cleanup_frequency_minutes=15)
    retention = _trigger(scheduler, "retention-article")

    assert await scheduler.tick(retention)
    assert ContentType.ARTICLE in engine.last_reconcile
    clock.advance(minutes=14)
    assert not await scheduler.tick(retention)
    clock.advance(minutes=1)
    assert await scheduler.tick(retention)


async def test_start_and_stop(scheduler):
    scheduler.start()
    assert scheduler.running
    await scheduler.stop()
    assert not scheduler.running
    assert {d["name"] for d in scheduler.describe()} >= {"news", "video"}
