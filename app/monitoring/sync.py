"""Sync scheduling: periodic and manual runs, bounded retries, cooldown.

Retry, backoff and cooldown live here as queryable scheduler state rather
than in the presentation layer. Each run yields exactly one SyncRunRecord,
handed to the ``recorder`` callback once its outcome is known.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from .errors import MonitoringError, TransientError, is_retryable

_LOGGER = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


@dataclass
class RetryPolicy:
    """Exponential backoff for transient failures: min(base * 2**(n-1), cap)."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


async def run_with_retry(operation, policy: RetryPolicy, sleep=asyncio.sleep):
    """Run ``operation`` retrying TransientError only.

    Returns (result, attempts). Re-raises the last error once attempts are
    exhausted or when a non-transient error occurs. Each failed error gets an
    ``attempts`` attribute.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation(), attempt
        except MonitoringError as err:
            err.attempts = attempt
            if not is_retryable(err) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            if isinstance(err, TransientError) and err.retry_after:
                delay = min(max(delay, err.retry_after), policy.max_delay)
            _LOGGER.info(
                "Transient failure (attempt %d/%d), retrying in %.1fs: %s",
                attempt, policy.max_attempts, delay, err.message,
            )
            await sleep(delay)


class SyncTrigger(Enum):
    AUTO = "auto"
    MANUAL = "manual"


class SyncOutcome(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncStatus(Enum):
    """What happened to a sync request."""
    COMPLETED = "completed"
    COALESCED = "coalesced"
    COOLDOWN = "cooldown"


@dataclass(frozen=True)
class SyncTarget:
    """Plant to synchronise, with the credential profile it syncs through."""
    plant_id: int
    vendor: str
    profile_id: Optional[int] = None
    vendor_plant_id: Optional[str] = None
    capacity_kwp: Optional[float] = None


@dataclass
class SyncReport:
    """Returned by the sync function for one attempt."""
    readings_synced: int = 0
    errors: list = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.errors)


@dataclass(frozen=True)
class SyncRunRecord:
    """Immutable record of one sync run."""
    plant_id: int
    vendor: str
    trigger: SyncTrigger
    started_at: datetime
    finished_at: datetime
    outcome: SyncOutcome
    attempts: int
    readings_synced: int = 0
    error_class: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "plant_id": self.plant_id,
            "vendor": self.vendor,
            "trigger": self.trigger.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "readings_synced": self.readings_synced,
            "error_class": self.error_class,
            "error_message": self.error_message,
        }


@dataclass
class SyncResult:
    status: SyncStatus
    run: Optional[SyncRunRecord] = None
    retry_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "run": self.run.to_dict() if self.run else None,
            "retry_at": self.retry_at.isoformat() if self.retry_at else None,
        }


@dataclass
class ProfileSyncState:
    """Manual-sync failure tracking for one credential profile."""
    consecutive_failures: int = 0
    cooldown_until: Optional[datetime] = None

    def to_dict(self, now: datetime) -> dict:
        in_cooldown = self.cooldown_until is not None and now < self.cooldown_until
        return {
            "consecutive_failures": self.consecutive_failures,
            "cooldown_until": self.cooldown_until.isoformat() if in_cooldown else None,
            "next_eligible_at": (self.cooldown_until if in_cooldown else now).isoformat(),
        }


class SyncScheduler:
    """Runs plant syncs on an interval and on demand.

    ``sync_fn(target)`` performs one attempt and returns a SyncReport;
    ``recorder(record)`` persists each finished run.
    """

    def __init__(
        self,
        sync_fn: Callable[[SyncTarget], Awaitable[SyncReport]],
        recorder: Optional[Callable[[SyncRunRecord], None]] = None,
        policy: Optional[RetryPolicy] = None,
        interval: timedelta = timedelta(minutes=15),
        initial_delay: timedelta = timedelta(seconds=30),
        failure_threshold: int = 3,
        cooldown: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = _utcnow,
        sleep=asyncio.sleep,
    ):
        self._sync_fn = sync_fn
        self._recorder = recorder
        self.policy = policy or RetryPolicy()
        self.interval = interval
        self.initial_delay = initial_delay
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._sleep = sleep

        self._in_flight = {}  # plant_id -> asyncio.Task
        self._auto_tasks = {}  # plant_id -> asyncio.Task
        self._profiles = {}  # profile key -> ProfileSyncState
        self._last_runs = {}  # plant_id -> SyncRunRecord

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @staticmethod
    def _profile_key(target: SyncTarget):
        return target.profile_id if target.profile_id is not None else f"plant:{target.plant_id}"

    def profile_state(self, target: SyncTarget) -> ProfileSyncState:
        return self._profiles.setdefault(self._profile_key(target), ProfileSyncState())

    def in_cooldown(self, target: SyncTarget) -> bool:
        state = self._profiles.get(self._profile_key(target))
        return bool(state and state.cooldown_until and self._clock() < state.cooldown_until)

    def status(self, target: SyncTarget) -> dict:
        now = self._clock()
        last = self._last_runs.get(target.plant_id)
        return {
            "plant_id": target.plant_id,
            "in_flight": target.plant_id in self._in_flight,
            "auto_sync": target.plant_id in self._auto_tasks,
            "last_run": last.to_dict() if last else None,
            **self.profile_state(target).to_dict(now),
        }

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def sync_now(self, target: SyncTarget, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncResult:
        """Run a sync for ``target``.

        Manual requests are rejected during a profile cooldown without any
        vendor call. A request for a plant with a run already in flight
        joins that run instead of starting another.
        """
        if trigger is SyncTrigger.MANUAL and self.in_cooldown(target):
            state = self.profile_state(target)
            _LOGGER.info("Manual sync for plant %s rejected: profile cooling down until %s",
                         target.plant_id, state.cooldown_until.isoformat())
            return SyncResult(status=SyncStatus.COOLDOWN, retry_at=state.cooldown_until)

        running = self._in_flight.get(target.plant_id)
        if running is not None and not running.done():
            _LOGGER.debug("Sync for plant %s already in flight; coalescing %s request", target.plant_id, trigger.value)
            record = await asyncio.shield(running)
            return SyncResult(status=SyncStatus.COALESCED, run=record)

        task = asyncio.ensure_future(self._execute(target, trigger))
        self._in_flight[target.plant_id] = task
        task.add_done_callback(lambda t, pid=target.plant_id: self._run_finished(pid, t))
        record = await asyncio.shield(task)
        return SyncResult(status=SyncStatus.COMPLETED, run=record)

    def _run_finished(self, plant_id, task) -> None:
        if self._in_flight.get(plant_id) is task:
            del self._in_flight[plant_id]

    async def _execute(self, target: SyncTarget, trigger: SyncTrigger) -> SyncRunRecord:
        started_at = self._clock()
        error = None
        report = None
        attempts = 0
        try:
            report, attempts = await run_with_retry(lambda: self._sync_fn(target), self.policy, self._sleep)
        except MonitoringError as err:
            error = err
            attempts = getattr(err, "attempts", 1)
        except Exception as err:  # noqa: BLE001 - a run always ends with a record
            _LOGGER.exception("Unexpected error syncing plant %s", target.plant_id)
            error = err
            attempts = max(attempts, 1)

        if error is not None:
            outcome = SyncOutcome.FAILED
        elif report.partial:
            outcome = SyncOutcome.PARTIAL
        else:
            outcome = SyncOutcome.SUCCESS

        error_message = None
        if error is not None:
            error_message = getattr(error, "message", None) or str(error)
        elif report.partial:
            error_message = "; ".join(str(e) for e in report.errors)

        record = SyncRunRecord(
            plant_id=target.plant_id,
            vendor=target.vendor,
            trigger=trigger,
            started_at=started_at,
            finished_at=self._clock(),
            outcome=outcome,
            attempts=attempts,
            readings_synced=report.readings_synced if report else 0,
            error_class=type(error).__name__ if error is not None else None,
            error_message=error_message,
        )

        if trigger is SyncTrigger.MANUAL:
            self._track_manual_outcome(target, outcome)
        self._last_runs[target.plant_id] = record

        if self._recorder is not None:
            try:
                self._recorder(record)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Failed to record sync run for plant %s", target.plant_id)

        log = _LOGGER.info if outcome is not SyncOutcome.FAILED else _LOGGER.warning
        log("Sync %s for plant %s (%s): %s after %d attempt(s), %d readings",
            trigger.value, target.plant_id, target.vendor, outcome.value, attempts, record.readings_synced)
        return record

    def _track_manual_outcome(self, target: SyncTarget, outcome: SyncOutcome) -> None:
        state = self.profile_state(target)
        if outcome is SyncOutcome.FAILED:
            state.consecutive_failures += 1
            if state.consecutive_failures >= self.failure_threshold:
                state.cooldown_until = self._clock() + self.cooldown
                state.consecutive_failures = 0
                _LOGGER.warning("Profile %s entered sync cooldown until %s",
                                self._profile_key(target), state.cooldown_until.isoformat())
        else:
            state.consecutive_failures = 0
            state.cooldown_until = None

    # ------------------------------------------------------------------
    # Automatic sync
    # ------------------------------------------------------------------

    def start_auto_sync(self, target: SyncTarget) -> None:
        """Sync ``target`` every ``interval`` until stopped. Manual vendors are skipped."""
        if target.vendor == "manual":
            return
        self.stop_auto_sync(target.plant_id)
        self._auto_tasks[target.plant_id] = asyncio.ensure_future(self._auto_loop(target))

    def stop_auto_sync(self, plant_id: int) -> None:
        task = self._auto_tasks.pop(plant_id, None)
        if task is not None:
            task.cancel()

    async def _auto_loop(self, target: SyncTarget) -> None:
        await self._sleep(self.initial_delay.total_seconds())
        while True:
            try:
                await self.sync_now(target, SyncTrigger.AUTO)
            except Exception:  # noqa: BLE001 - keep the timer alive
                _LOGGER.exception("Automatic sync loop error for plant %s", target.plant_id)
            await self._sleep(self.interval.total_seconds())

    async def shutdown(self) -> None:
        tasks = list(self._auto_tasks.values())
        self._auto_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
