# ABOUTME: Per-source rate and quota guard wrapping every adapter call.
# ABOUTME: Tracks daily and per-minute call counts and exponential backoff on quota signals.

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import structlog

from content_pulse.db.models import Source
from content_pulse.errors import AdapterError, QuotaExceeded
from content_pulse.models import RawItem

log = structlog.get_logger()

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class QuotaState:
    """Bookkeeping for one source. Owned exclusively by the guard."""

    calls_today: int = 0
    window_started_at: datetime | None = None
    calls_this_minute: int = 0
    minute_started_at: datetime | None = None
    consecutive_failures: int = 0
    backoff_until: datetime | None = None
    last_attempt_at: datetime | None = None
    healthy: bool = True
    last_error: str | None = None

    def as_dict(self) -> dict:
        return {
            "calls_today": self.calls_today,
            "window_started_at": self.window_started_at,
            "calls_this_minute": self.calls_this_minute,
            "consecutive_failures": self.consecutive_failures,
            "backoff_until": self.backoff_until,
            "last_attempt_at": self.last_attempt_at,
            "healthy": self.healthy,
            "last_error": self.last_error,
        }


class QuotaGuard:
    """The only place quota bookkeeping lives. Adapters never throttle themselves."""

    def __init__(
        self,
        base_delay: timedelta = timedelta(seconds=60),
        max_delay: timedelta = timedelta(hours=1),
        timezone: str = "UTC",
        clock: Clock = utc_now,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.tz = ZoneInfo(timezone)
        self.clock = clock
        self._states: dict[int, QuotaState] = {}

    def state(self, source_id: int) -> QuotaState:
        if source_id not in self._states:
            self._states[source_id] = QuotaState()
        return self._states[source_id]

    def snapshot(self) -> dict[int, dict]:
        return {source_id: state.as_dict() for source_id, state in self._states.items()}

    def _day_start(self, now: datetime) -> datetime:
        local = now.astimezone(self.tz)
        return local.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(UTC)

    def _roll_windows(self, state: QuotaState, now: datetime) -> None:
        day_start = self._day_start(now)
        if state.window_started_at != day_start:
            state.window_started_at = day_start
            state.calls_today = 0
        minute_start = now.replace(second=0, microsecond=0)
        if state.minute_started_at != minute_start:
            state.minute_started_at = minute_start
            state.calls_this_minute = 0

    def check(self, source: Source) -> str | None:
        """Return why the source must be skipped this cycle, or None to proceed."""
        now = self.clock()
        state = self.state(source.id)
        self._roll_windows(state, now)

        if not source.is_active:
            return "inactive"
        if state.backoff_until is not None and now < state.backoff_until:
            return "backoff"
        if source.daily_quota is not None and state.calls_today >= source.daily_quota:
            return "daily_quota"
        if source.per_minute_quota is not None and state.calls_this_minute >= source.per_minute_quota:
            return "per_minute_quota"
        return None

    def is_due(self, source: Source) -> bool:
        """Whether the source's own fetch interval has elapsed since its last attempt."""
        last = self.state(source.id).last_attempt_at
        if last is None:
            return True
        return self.clock() - last >= timedelta(minutes=max(1, source.fetch_interval_minutes))

    def record_success(self, source: Source) -> None:
        state = self.state(source.id)
        state.consecutive_failures = 0
        state.backoff_until = None
        state.calls_today += 1
        state.healthy = True
        state.last_error = None

    def record_quota_exceeded(self, source: Source) -> datetime:
        state = self.state(source.id)
        state.consecutive_failures += 1
        delay = min(self.base_delay * (2**state.consecutive_failures), self.max_delay)
        state.backoff_until = self.clock() + delay
        log.warning(
            "quota_backoff",
            source_id=source.id,
            consecutive_failures=state.consecutive_failures,
            delay_seconds=int(delay.total_seconds()),
            backoff_until=state.backoff_until.isoformat(),
        )
        return state.backoff_until

    def record_failure(self, source: Source, error: AdapterError) -> None:
        state = self.state(source.id)
        state.healthy = False
        state.last_error = f"{error.kind}: {error.message}"

    async def call(
        self, source: Source, fetch: Callable[[Source], Awaitable[list[RawItem]]]
    ) -> list[RawItem]:
        """Run one adapter call and update the source's bookkeeping from its outcome.

        Callers run ``check`` first. Errors are re-raised after bookkeeping;
        there is no retry within the cycle.
        """
        state = self.state(source.id)
        self._roll_windows(state, self.clock())
        state.last_attempt_at = self.clock()
        state.calls_this_minute += 1
        try:
            items = await fetch(source)
        except QuotaExceeded as e:
            self.record_quota_exceeded(source)
            state.last_error = f"{e.kind}: {e.message}"
            raise
        except AdapterError as e:
            self.record_failure(source, e)
            raise
        self.record_success(source)
        return items
