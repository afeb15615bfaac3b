# ABOUTME: Retention manager enforcing count and age limits per content type.
# ABOUTME: Preserves pinned and featured content, purges stale rejects and repeated titles.

import asyncio
from datetime import timedelta

import structlog

from content_pulse.db.models import ContentRecord
from content_pulse.db.store import SqlContentStore
from content_pulse.errors import StoreError
from content_pulse.models import ContentType, ModerationStatus, ReconcileResult, RetentionPolicy
from content_pulse.services.quota import Clock, utc_now

log = structlog.get_logger()


class RetentionManager:
    """Reconciles stored content against a RetentionPolicy.

    Preserved records (pinned, featured or breaking, as the policy allows) are
    never deleted and still count toward the displayed total. When they alone
    exceed ``max_item_count`` the cap is exceeded on purpose: only
    non-preserved candidates are ever removed to satisfy it.

    Only one reconciliation per content type runs at a time.
    """

    def __init__(
        self,
        store: SqlContentStore,
        clock: Clock = utc_now,
        rejected_retention: timedelta = timedelta(days=7),
    ):
        self.store = store
        self.clock = clock
        self.rejected_retention = rejected_retention
        self._locks: dict[ContentType, asyncio.Lock] = {}

    def _lock(self, content_type: ContentType) -> asyncio.Lock:
        if content_type not in self._locks:
            self._locks[content_type] = asyncio.Lock()
        return self._locks[content_type]

    def is_running(self, content_type: ContentType) -> bool:
        return self._lock(content_type).locked()

    @staticmethod
    def is_preserved(record: ContentRecord, policy: RetentionPolicy) -> bool:
        if policy.preserve_pinned and record.is_pinned:
            return True
        return policy.preserve_featured and (record.is_featured or record.is_breaking)

    async def reconcile(self, content_type: ContentType, policy: RetentionPolicy) -> ReconcileResult:
        async with self._lock(content_type):
            return await self._reconcile(content_type, policy)

    def plan(
        self, records: list[ContentRecord], policy: RetentionPolicy
    ) -> tuple[list[ContentRecord], list[ContentRecord]]:
        """Split records (newest first) into (preserved, to_delete)."""
        now = self.clock()
        preserved = [r for r in records if self.is_preserved(r, policy)]
        candidates = [r for r in records if not self.is_preserved(r, policy)]
        marked: list[ContentRecord] = []

        def _mark(predicate) -> None:
            nonlocal candidates
            marked.extend(r for r in candidates if predicate(r))
            candidates = [r for r in candidates if not predicate(r)]

        # Repeated titles: the earliest stored copy wins.
        seen_titles = {r.normalized_title for r in preserved if r.normalized_title}
        repeated: set[int] = set()
        for record in reversed(candidates):
            if record.normalized_title and record.normalized_title in seen_titles:
                repeated.add(record.id)
            elif record.normalized_title:
                seen_titles.add(record.normalized_title)
        _mark(lambda r: r.id in repeated)

        rejected_cutoff = now - self.rejected_retention
        _mark(
            lambda r: r.moderation_status == ModerationStatus.REJECTED.value
            and r.created_at < rejected_cutoff
        )

        if policy.max_age_hours is not None:
            age_cutoff = now - timedelta(hours=policy.max_age_hours)
            _mark(lambda r: r.published_at < age_cutoff)

        if policy.max_item_count is not None:
            allowed = max(0, policy.max_item_count - len(preserved))
            if len(candidates) > allowed:
                marked.extend(candidates[allowed:])
                candidates = candidates[:allowed]

        return preserved, marked

    async def _reconcile(self, content_type: ContentType, policy: RetentionPolicy) -> ReconcileResult:
        records = await self.store.find(content_type=content_type.value)
        preserved, marked = self.plan(records, policy)

        deleted = 0
        for record in marked:
            try:
                await self.store.delete(record.id)
            except StoreError as e:
                log.error("retention_delete_failed", record_id=record.id, error=str(e))
                continue
            deleted += 1
            log.debug("retention_deleted", record_id=record.id, title=record.title[:60])

        final_count = await self.store.count(content_type=content_type.value)
        if policy.max_item_count is not None and len(preserved) > policy.max_item_count:
            log.warning(
                "retention_cap_exceeded_by_preserved",
                content_type=content_type.value,
                preserved=len(preserved),
                max_item_count=policy.max_item_count,
            )
        log.info(
            "retention_reconciled",
            content_type=content_type.value,
            deleted=deleted,
            final=final_count,
            max=policy.max_item_count,
            preserved=len(preserved),
        )
        return ReconcileResult(
            content_type=content_type,
            deleted_count=deleted,
            final_count=final_count,
            max_limit=policy.max_item_count,
            preserved_count=len(preserved),
        )
