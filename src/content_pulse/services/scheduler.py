# ABOUTME: Independent periodic triggers for each content class, retention and settings polling.
# ABOUTME: Cadences are re-evaluated on every tick so day/night bands switch without a restart.

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import structlog

from content_pulse.config import Settings
from content_pulse.errors import StoreUnavailableError
from content_pulse.models import ContentType
from content_pulse.services.engine import Engine

log = structlog.get_logger()


@dataclass
class PeriodicTrigger:
    name: str
    interval: Callable[[datetime], timedelta]
    action: Callable[[], Awaitable[Any]]
    last_run: datetime | None = None
    runs: int = 0

    def is_due(self, now: datetime) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval(now)


class Scheduler:
    """Runs each trigger in its own task; unrelated triggers never wait on each other."""

    def __init__(self, engine: Engine, settings: Settings | None = None):
        self.engine = engine
        self.settings = settings or engine.settings
        self.tz = ZoneInfo(self.settings.timezone)
        self.triggers = self._build_triggers()
        self._tasks: list[asyncio.Task] = []

    def is_night(self, now: datetime) -> bool:
        hour = now.astimezone(self.tz).hour
        start, end = self.settings.night_start_hour, self.settings.night_end_hour
        if start > end:
            return hour >= start or hour < end
        return start <= hour < end

    def video_interval(self, now: datetime) -> timedelta:
        if self.is_night(now):
            return timedelta(minutes=self.settings.video_night_interval_minutes)
        return timedelta(minutes=self.settings.video_day_interval_minutes)

    def _retention_interval(self, content_type: ContentType) -> Callable[[datetime], timedelta]:
        def interval(_now: datetime) -> timedelta:
            minutes = self.engine.cleanup_minutes.get(
                content_type, self.settings.default_cleanup_frequency_minutes
            )
            return timedelta(minutes=minutes)

        return interval

    def _ingest(self, content_type: ContentType, name: str) -> Callable[[], Awaitable[Any]]:
        async def action():
            return await self.engine.run_ingestion_pass(
                content_type, respect_cadence=True, reason=name
            )

        return action

    def _reconcile(self, content_type: ContentType) -> Callable[[], Awaitable[Any]]:
        async def action():
            return await self.engine.scheduled_reconciliation(content_type)

        return action

    def _build_triggers(self) -> list[PeriodicTrigger]:
        s = self.settings
        triggers = [
            PeriodicTrigger(
                "news",
                lambda _now: timedelta(minutes=s.news_interval_minutes),
                self._ingest(ContentType.ARTICLE, "news"),
            ),
            PeriodicTrigger("video", self.video_interval, self._ingest(ContentType.VIDEO, "video")),
            PeriodicTrigger(
                "reviews",
                lambda _now: timedelta(minutes=s.review_interval_minutes),
                self._ingest(ContentType.REVIEW, "reviews"),
            ),
            PeriodicTrigger(
                "settings-poll",
                lambda _now: timedelta(seconds=s.settings_poll_seconds),
                self.engine.watcher.poll,
            ),
        ]
        for content_type in ContentType:
            triggers.append(
                PeriodicTrigger(
                    f"retention-{content_type.value}",
                    self._retention_interval(content_type),
                    self._reconcile(content_type),
                )
            )
        return triggers

    async def tick(self, trigger: PeriodicTrigger) -> bool:
        """Run the trigger if its cadence has elapsed. Returns whether it ran."""
        if self.engine.halted:
            log.warning("tick_skipped_halted", trigger=trigger.name, reason=self.engine.halted_reason)
            return False
        now = self.engine.clock()
        if not trigger.is_due(now):
            return False

        trigger.last_run = now
        trigger.runs += 1
        try:
            await trigger.action()
        except StoreUnavailableError as e:
            self.engine.halt(str(e))
        except Exception as e:
            log.error("trigger_failed", trigger=trigger.name, error=repr(e))
        return True

    async def _loop(self, trigger: PeriodicTrigger) -> None:
        log.info("trigger_started", trigger=trigger.name)
        while True:
            await self.tick(trigger)
            await asyncio.sleep(self.settings.scheduler_tick_seconds)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._loop(trigger), name=f"trigger-{trigger.name}")
            for trigger in self.triggers
        ]
        log.info("scheduler_started", triggers=[t.name for t in self.triggers])

    async def stop(self) -> None:
        """Cancel every trigger; in-flight fetches are cancelled with them."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.engine.watcher.cancel()
        log.info("scheduler_stopped")

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def describe(self) -> list[dict]:
        now = self.engine.clock()
        return [
            {
                "name": t.name,
                "interval_seconds": int(t.interval(now).total_seconds()),
                "last_run": t.last_run,
                "runs": t.runs,
            }
            for t in self.triggers
        ]
