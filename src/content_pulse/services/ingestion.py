# ABOUTME: Per-source ingestion job: guard, fetch, moderate, deduplicate and store new content.
# ABOUTME: Runs many sources concurrently per tick with failures isolated to each source.

import asyncio
import time
from collections.abc import Iterable

import structlog

from content_pulse.db.models import Source
from content_pulse.db.store import SqlContentStore, SqlSettingsStore
from content_pulse.errors import (
    AdapterError,
    ConfigError,
    DuplicateRecordError,
    QuotaExceeded,
    StoreError,
    StoreUnavailableError,
)
from content_pulse.models import ContentType, ModerationStatus, RawItem, RunStatus, RunSummary, SourceKind
from content_pulse.services.adapters import SourceAdapter
from content_pulse.services.dedup import DedupIndex, normalize_title, normalize_url
from content_pulse.services.moderation import is_breaking, matched_keyword
from content_pulse.services.quota import Clock, QuotaGuard, utc_now

log = structlog.get_logger()


class IngestionJob:
    """One fetch cycle for one source.

    Steps are strictly sequential within a source: guard check, fetch,
    moderation filter, dedup against a fresh store snapshot plus the items
    already accepted in this batch, then one atomic write per accepted item.
    A failed fetch is retried on the next scheduled cycle only.
    """

    def __init__(
        self,
        store: SqlContentStore,
        settings_store: SqlSettingsStore,
        guard: QuotaGuard,
        adapters: dict[SourceKind, SourceAdapter],
        clock: Clock = utc_now,
    ):
        self.store = store
        self.settings_store = settings_store
        self.guard = guard
        self.adapters = adapters
        self.clock = clock

    async def run(self, source: Source) -> RunSummary:
        started = time.monotonic()
        summary = RunSummary(source_id=source.id, source_name=source.name, status=RunStatus.SUCCEEDED)
        content_type = ContentType(source.content_type)

        try:
            denylist = await self.settings_store.get_moderation_denylist(content_type)
            auto_moderation = await self.settings_store.get_auto_moderation(content_type)
            detect_breaking = await self.settings_store.get_detect_breaking(content_type)
        except ConfigError as e:
            log.warning("ingestion_config_error", source_id=source.id, error=str(e))
            return self._finish(summary, started, RunStatus.SKIPPED, skip_reason="config_error", error=str(e))

        reason = self.guard.check(source)
        if reason is not None:
            log.info("ingestion_skipped", source_id=source.id, name=source.name, reason=reason)
            return self._finish(summary, started, RunStatus.SKIPPED, skip_reason=reason)

        adapter = self.adapters.get(SourceKind(source.kind))
        if adapter is None:
            log.error("no_adapter_for_source", source_id=source.id, kind=source.kind)
            return self._finish(summary, started, RunStatus.FAILED, error=f"no adapter for {source.kind}")

        try:
            items = await self.guard.call(source, adapter.fetch)
        except QuotaExceeded as e:
            if not e.items:
                return self._finish(summary, started, RunStatus.SKIPPED, skip_reason="quota_exceeded")
            items = e.items
        except AdapterError as e:
            log.error(
                "source_fetch_failed",
                source_id=source.id,
                name=source.name,
                error_kind=e.kind,
                error=e.message,
            )
            summary.errors = 1
            return self._finish(summary, started, RunStatus.FAILED, error=f"{e.kind}: {e.message}")

        summary.seen = len(items)
        try:
            existing = await self.store.find(content_type=content_type.value)
        except StoreUnavailableError:
            raise
        except StoreError as e:
            log.error("dedup_snapshot_failed", source_id=source.id, error=str(e))
            summary.errors += 1
            return self._finish(summary, started, RunStatus.FAILED, error=str(e))

        index = DedupIndex(existing)
        for item in items:
            keyword = matched_keyword(item, denylist)
            if keyword is not None:
                summary.filtered += 1
                log.info("item_filtered", source_id=source.id, url=item.canonical_url, keyword=keyword)
                continue

            match = index.match(item)
            if match is not None:
                summary.duplicate += 1
                log.debug("item_duplicate", source_id=source.id, url=item.canonical_url, key=match)
                continue

            try:
                await self.store.create(
                    self._record_data(item, content_type, auto_moderation, detect_breaking)
                )
            except DuplicateRecordError:
                summary.duplicate += 1
                index.add(item)
                log.debug("item_duplicate", source_id=source.id, url=item.canonical_url, key="store")
                continue
            except StoreError as e:
                summary.errors += 1
                log.error("item_write_failed", source_id=source.id, url=item.canonical_url, error=str(e))
                continue

            index.add(item)
            summary.created += 1

        return self._finish(summary, started, RunStatus.SUCCEEDED)

    def _record_data(
        self,
        item: RawItem,
        content_type: ContentType,
        auto_moderation: bool,
        detect_breaking: bool,
    ) -> dict:
        status = ModerationStatus.APPROVED if auto_moderation else ModerationStatus.PENDING
        return {
            "content_type": content_type.value,
            "title": item.title[:500],
            "body_summary": item.body_summary,
            "canonical_url": normalize_url(item.canonical_url),
            "normalized_title": normalize_title(item.title)[:500],
            "media_url": item.media_url,
            "author_name": item.author_name,
            "source_id": item.source_id,
            "is_breaking": detect_breaking and is_breaking(item),
            "moderation_status": status.value,
            "published_at": item.published_at,
            "created_at": self.clock(),
        }

    def _finish(
        self,
        summary: RunSummary,
        started: float,
        status: RunStatus,
        skip_reason: str | None = None,
        error: str | None = None,
    ) -> RunSummary:
        summary.status = status
        summary.skip_reason = skip_reason
        summary.error = error
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        summary.finished_at = self.clock()
        if status != RunStatus.SKIPPED:
            log.info(
                "ingestion_finished",
                source_id=summary.source_id,
                status=status.value,
                seen=summary.seen,
                filtered=summary.filtered,
                duplicate=summary.duplicate,
                created=summary.created,
                errors=summary.errors,
                duration_ms=summary.duration_ms,
            )
        return summary


async def run_pass(
    job: IngestionJob, sources: Iterable[Source], max_concurrency: int = 8
) -> list[RunSummary]:
    """Run one job per source concurrently, most urgent priority first.

    No ordering is guaranteed between sources. An unreachable store is
    re-raised once every sibling job has finished.
    """
    ordered = sorted(sources, key=lambda s: (s.priority, s.id))
    if not ordered:
        return []

    semaphore = asyncio.Semaphore(max(1, min(len(ordered), max_concurrency)))

    async def _bounded(source: Source) -> RunSummary:
        async with semaphore:
            return await job.run(source)

    results = await asyncio.gather(*(_bounded(s) for s in ordered), return_exceptions=True)

    summaries: list[RunSummary] = []
    fatal: StoreUnavailableError | None = None
    for source, result in zip(ordered, results, strict=True):
        if isinstance(result, StoreUnavailableError):
            fatal = result
        elif isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            log.error("ingestion_job_crashed", source_id=source.id, error=repr(result))
            summaries.append(
                RunSummary(
                    source_id=source.id,
                    source_name=source.name,
                    status=RunStatus.FAILED,
                    errors=1,
                    error=repr(result),
                    finished_at=job.clock(),
                )
            )
        else:
            summaries.append(result)

    if fatal is not None:
        raise fatal
    return summaries
