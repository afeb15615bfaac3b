# ABOUTME: Watches retention caps and triggers out-of-band reconciliation when they change.
# ABOUTME: Coalesces rapid changes into one in-flight run plus at most one follow-up per type.

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from content_pulse.db.store import SqlSettingsStore
from content_pulse.errors import ConfigError
from content_pulse.models import ContentType, RetentionPolicy

log = structlog.get_logger()

Action = Callable[[ContentType], Awaitable[Any]]


def _is_increase(previous: int | None, current: int | None) -> bool:
    if previous is None:
        return False
    return current is None or current > previous


class SettingsWatcher:
    """Reacts to ``max_item_count`` changes.

    A decrease reconciles immediately. An increase backfills across all
    active sources of that content type first, then reconciles. Triggers that
    arrive while a run is in flight are folded into one follow-up run.
    Repairing a malformed policy counts as an increase.
    """

    def __init__(self, settings_store: SqlSettingsStore, reconcile: Action, backfill: Action):
        self.settings_store = settings_store
        self._reconcile = reconcile
        self._backfill = backfill
        self._known: dict[ContentType, int | None] = {}
        self._pending: dict[ContentType, bool] = {}
        self._tasks: dict[ContentType, asyncio.Task] = {}

    def attach(self) -> None:
        self.settings_store.add_listener(self.on_settings_changed)

    async def on_settings_changed(
        self, content_type: ContentType, previous: RetentionPolicy | None, current: RetentionPolicy
    ) -> None:
        self._known[content_type] = current.max_item_count
        if previous is None:
            log.info("retention_settings_repaired", content_type=content_type.value)
            self.trigger(content_type, increased=True)
            return
        if previous.max_item_count == current.max_item_count:
            return
        log.info(
            "retention_limit_changed",
            content_type=content_type.value,
            previous=previous.max_item_count,
            current=current.max_item_count,
        )
        self.trigger(content_type, _is_increase(previous.max_item_count, current.max_item_count))

    async def poll(self) -> None:
        """Detect cap changes made without going through the settings hook."""
        for content_type in ContentType:
            try:
                policy = await self.settings_store.get_retention_policy(content_type)
            except ConfigError as e:
                log.warning("settings_poll_config_error", content_type=content_type.value, error=str(e))
                continue
            if content_type not in self._known:
                self._known[content_type] = policy.max_item_count
                continue
            previous = self._known[content_type]
            if previous != policy.max_item_count:
                self._known[content_type] = policy.max_item_count
                log.info(
                    "retention_limit_changed",
                    content_type=content_type.value,
                    previous=previous,
                    current=policy.max_item_count,
                    via="poll",
                )
                self.trigger(content_type, _is_increase(previous, policy.max_item_count))

    def trigger(self, content_type: ContentType, increased: bool) -> None:
        self._pending[content_type] = self._pending.get(content_type, False) or increased
        if content_type in self._tasks:
            log.info("reconciliation_coalesced", content_type=content_type.value)
            return
        self._tasks[content_type] = asyncio.create_task(self._drain(content_type))

    def in_flight(self, content_type: ContentType) -> bool:
        return content_type in self._tasks

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def cancel(self) -> None:
        tasks = list(self._tasks.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _drain(self, content_type: ContentType) -> None:
        try:
            while content_type in self._pending:
                increased = self._pending.pop(content_type)
                try:
                    if increased:
                        await self._backfill(content_type)
                    await self._reconcile(content_type)
                except Exception as e:
                    log.error(
                        "settings_reconciliation_failed",
                        content_type=content_type.value,
                        error=repr(e),
                    )
        finally:
            self._tasks.pop(content_type, None)
