# ABOUTME: Wires stores, quota guard, adapters, ingestion, retention and the settings watcher.
# ABOUTME: Provides the manual "ingest now" and "reconcile now" entry points and status reporting.

from collections import deque
from datetime import timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_pulse.config import Settings, get_settings
from content_pulse.db.store import SqlContentStore, SqlSettingsStore, SqlSourceRegistry
from content_pulse.errors import ConfigError, StoreUnavailableError
from content_pulse.models import ContentType, ReconcileResult, RunStatus, RunSummary, SourceKind
from content_pulse.services.adapters import SourceAdapter, build_adapters
from content_pulse.services.ingestion import IngestionJob, run_pass
from content_pulse.services.quota import Clock, QuotaGuard, utc_now
from content_pulse.services.retention import RetentionManager
from content_pulse.services.settings_watcher import SettingsWatcher

log = structlog.get_logger()


class Engine:
    """Single-process ingestion engine over the content store interfaces."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        adapters: dict[SourceKind, SourceAdapter] | None = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.store = SqlContentStore(session_factory)
        self.registry = SqlSourceRegistry(session_factory)
        self.settings_store = SqlSettingsStore(session_factory, self.settings)
        self.guard = QuotaGuard(
            base_delay=timedelta(seconds=self.settings.quota_base_delay_seconds),
            max_delay=timedelta(seconds=self.settings.quota_max_delay_seconds),
            timezone=self.settings.timezone,
            clock=clock,
        )
        self.adapters = adapters if adapters is not None else build_adapters(self.settings)
        self.job = IngestionJob(self.store, self.settings_store, self.guard, self.adapters, clock)
        self.retention = RetentionManager(
            self.store,
            clock=clock,
            rejected_retention=timedelta(days=self.settings.rejected_retention_days),
        )
        self.watcher = SettingsWatcher(
            self.settings_store, reconcile=self.run_reconciliation, backfill=self.backfill
        )
        self.watcher.attach()

        self.history: deque[RunSummary] = deque(maxlen=self.settings.run_history_size)
        self.last_reconcile: dict[ContentType, ReconcileResult] = {}
        self.cleanup_minutes: dict[ContentType, int] = {}
        self.config_warnings: dict[str, str] = {}
        self.halted_reason: str | None = None

    @property
    def halted(self) -> bool:
        return self.halted_reason is not None

    def halt(self, reason: str) -> None:
        if self.halted_reason is None:
            log.error("ingestion_halted", reason=reason)
        self.halted_reason = reason

    def resume(self) -> None:
        if self.halted_reason is not None:
            log.info("ingestion_resumed", previous_reason=self.halted_reason)
        self.halted_reason = None

    async def run_ingestion_pass(
        self,
        content_type: ContentType | None = None,
        *,
        respect_cadence: bool = False,
        reason: str = "manual",
    ) -> list[RunSummary]:
        """Run one ingestion job for every active source (of one content type)."""
        try:
            sources = await self.registry.list_active_sources(content_type)
            if respect_cadence:
                sources = [s for s in sources if self.guard.is_due(s)]
            summaries = await run_pass(self.job, sources, self.settings.max_concurrency)
        except StoreUnavailableError as e:
            self.halt(str(e))
            raise

        for summary in summaries:
            key = f"source:{summary.source_id}"
            if summary.skip_reason == "config_error":
                self.config_warnings[key] = summary.error or "config_error"
            else:
                self.config_warnings.pop(key, None)
        self.history.extend(summaries)

        log.info(
            "ingestion_pass_done",
            reason=reason,
            content_type=content_type.value if content_type else "all",
            sources=len(summaries),
            created=sum(s.created for s in summaries),
            failed=sum(1 for s in summaries if s.status == RunStatus.FAILED),
            skipped=sum(1 for s in summaries if s.status == RunStatus.SKIPPED),
        )
        return summaries

    async def backfill(self, content_type: ContentType) -> list[RunSummary]:
        """Fill slots freed by a raised cap, bounded by each source's quota guard."""
        return await self.run_ingestion_pass(content_type, reason="backfill")

    async def run_reconciliation(self, content_type: ContentType) -> ReconcileResult | None:
        """Reconcile one content type now. Returns None while its settings are malformed."""
        key = f"retention:{content_type.value}"
        try:
            policy = await self.settings_store.get_retention_policy(content_type)
        except ConfigError as e:
            self.config_warnings[key] = str(e)
            log.warning("retention_config_error", content_type=content_type.value, error=str(e))
            return None
        except StoreUnavailableError as e:
            self.halt(str(e))
            raise
        self.config_warnings.pop(key, None)
        self.cleanup_minutes[content_type] = policy.cleanup_frequency_minutes

        try:
            result = await self.retention.reconcile(content_type, policy)
        except StoreUnavailableError as e:
            self.halt(str(e))
            raise
        self.last_reconcile[content_type] = result
        return result

    async def scheduled_reconciliation(self, content_type: ContentType) -> ReconcileResult | None:
        if self.retention.is_running(content_type) or self.watcher.in_flight(content_type):
            log.info("retention_already_running", content_type=content_type.value)
            return None
        return await self.run_reconciliation(content_type)

    def status(self) -> dict:
        return {
            "halted": self.halted,
            "halted_reason": self.halted_reason,
            "config_warnings": dict(self.config_warnings),
            "quota": self.guard.snapshot(),
            "last_reconcile": {
                ct.value: result.model_dump() for ct, result in self.last_reconcile.items()
            },
            "recent_runs": [s.model_dump() for s in list(self.history)[-20:]],
        }
