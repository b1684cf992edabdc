from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Protocol

from loguru import logger

from webhook_delay.core.error_taxonomy import (
    ErrorCategory,
    classify_exception,
    is_retryable,
    message_for_category,
    truncate_error,
)
from webhook_delay.core.logging_setup import emit_event
from webhook_delay.data.record_store import BuildStatus, RecordStore, SchedulingRecord
from webhook_delay.runtime.alarm_timer import AlarmTimer, wall_clock_ms

# Indexed by consecutive failure count (1-based), clamped to the last entry.
RETRY_WINDOWS_MS: tuple[int, ...] = (60_000, 120_000, 300_000)

# Keeps every scheduledFor inside the range datetime can render.
MAX_DELAY_SECONDS = 365 * 24 * 60 * 60


class SchedulerState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    EXECUTING = "executing"
    RETRYING = "retrying"


class Trigger(Protocol):
    def trigger(self, url: str) -> Awaitable[object]: ...


@dataclass(frozen=True)
class QueueResult:
    last_webhook_at: int
    scheduled_for: int
    delay_ms: int


@dataclass(frozen=True)
class SchedulerStatus:
    last_webhook_at: str | None
    scheduled_for: str | None
    last_build_at: str | None
    last_build_status: str | None
    last_error: str | None
    retry_count: int
    delay_ms: int | None
    webhook_url: str | None
    state: SchedulerState


def retry_delay_ms(retry_count: int) -> int:
    index = min(max(1, int(retry_count)) - 1, len(RETRY_WINDOWS_MS) - 1)
    return RETRY_WINDOWS_MS[index]


def to_iso(value_ms: int | None) -> str | None:
    if value_ms is None:
        return None
    try:
        ts = datetime.fromtimestamp(value_ms / 1000.0, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def derive_state(record: SchedulingRecord, *, executing: bool = False) -> SchedulerState:
    if executing:
        return SchedulerState.EXECUTING
    if record.scheduled_for is None:
        return SchedulerState.IDLE
    if record.retry_count >= 1:
        return SchedulerState.RETRYING
    return SchedulerState.PENDING


class DelayedTriggerStateMachine:
    """Single-slot delayed trigger per scheduler key.

    A schedule request replaces whatever is pending for its key. When the
    alarm fires the build webhook is called once; failures are retried on
    the ``RETRY_WINDOWS_MS`` cadence with no upper bound on attempts, until
    the call succeeds or a new request supersedes the retry.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        trigger: Trigger,
        loop: asyncio.AbstractEventLoop | None = None,
        timer: AlarmTimer | None = None,
        clock: Callable[[], int] | None = None,
        static_target: Callable[[], str] | None = None,
    ):
        self._store = store
        self._trigger = trigger
        self._clock = clock or wall_clock_ms
        self._static_target = static_target or (lambda: "")
        self._timer = timer or AlarmTimer(
            loop=loop or asyncio.get_running_loop(),
            trigger=self.on_alarm,
            clock=self._clock,
        )
        # key -> [lock, holders + waiters]; entries are dropped when unused.
        self._state_locks: dict[str, list] = {}
        self._execution_locks: dict[str, list] = {}
        self._executing: set[str] = set()

    @property
    def timer(self) -> AlarmTimer:
        return self._timer

    @staticmethod
    @asynccontextmanager
    async def _keyed_lock(locks: dict[str, list], key: str) -> AsyncIterator[None]:
        entry = locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                locks.pop(key, None)

    def _state_lock(self, key: str):
        return self._keyed_lock(self._state_locks, key)

    def _execution_lock(self, key: str):
        return self._keyed_lock(self._execution_locks, key)

    def _load(self, key: str) -> SchedulingRecord:
        return self._store.get(key) or SchedulingRecord()

    async def queue_execution(self, key: str, delay_seconds: int, target_url: str | None = None) -> QueueResult:
        async with self._state_lock(key):
            record = self._load(key)
            now = self._clock()
            delay_ms = int(delay_seconds) * 1000
            scheduled_for = now + delay_ms
            record = replace(
                record,
                last_webhook_at=now,
                scheduled_for=scheduled_for,
                retry_count=0,
                delay_ms=delay_ms,
                webhook_url=target_url or None,
            )
            self._store.put(key, record)
            self._timer.arm(key, scheduled_for)

        emit_event(
            logger,
            f"Build queued. Next build scheduled at {to_iso(scheduled_for)}.",
            event="build_queued",
            scheduler_key=key,
            stage="queue",
            scheduled_for=to_iso(scheduled_for),
        )
        return QueueResult(last_webhook_at=now, scheduled_for=scheduled_for, delay_ms=delay_ms)

    async def on_alarm(self, key: str) -> None:
        async with self._execution_lock(key):
            await self._fire(key)

    async def _fire(self, key: str) -> None:
        async with self._state_lock(key):
            record = self._load(key)
            expected = record.scheduled_for
            if expected is None:
                logger.debug(f"Alarm for key={key} ignored: nothing scheduled")
                return

            now = self._clock()
            if expected > now:
                # Redelivered or early fire; wait for the real due time.
                self._timer.arm(key, expected)
                return

            target = record.webhook_url or self._static_target()
            if not target:
                retry_count = record.retry_count + 1
                self._store.put(
                    key,
                    replace(
                        record,
                        last_build_at=now,
                        last_build_status=BuildStatus.ERROR,
                        last_error=message_for_category(ErrorCategory.CONFIG_INVALID),
                        retry_count=retry_count,
                        scheduled_for=None,
                    ),
                )
                self._timer.cancel(key)
                emit_event(
                    logger,
                    "No webhook URL stored in state.",
                    level="ERROR",
                    event="build_misconfigured",
                    scheduler_key=key,
                    stage="execute",
                    outcome="error",
                    retry_count=retry_count,
                    error_category=ErrorCategory.CONFIG_INVALID.value,
                )
                return

            fired_for = (expected, record.last_webhook_at)
            self._executing.add(key)

        error: Exception | None = None
        duration_ms: float | None = None
        try:
            result = await self._trigger.trigger(target)
            duration_ms = getattr(result, "duration_ms", None)
        except Exception as exc:
            error = exc
        finally:
            self._executing.discard(key)

        async with self._state_lock(key):
            current = self._load(key)
            now = self._clock()
            superseded = (current.scheduled_for, current.last_webhook_at) != fired_for
            if error is None:
                self._record_success(key, current, now, superseded=superseded, duration_ms=duration_ms)
            else:
                self._record_failure(key, current, now, error, superseded=superseded)

    def _record_success(
        self,
        key: str,
        record: SchedulingRecord,
        now: int,
        *,
        superseded: bool,
        duration_ms: float | None,
    ) -> None:
        updated = replace(record, last_build_at=now, last_build_status=BuildStatus.SUCCESS, last_error=None)
        if not superseded:
            updated = replace(updated, retry_count=0, scheduled_for=None)
        self._store.put(key, updated)
        emit_event(
            logger,
            "Build webhook triggered successfully.",
            event="build_succeeded",
            scheduler_key=key,
            stage="execute",
            outcome="success",
            duration_ms=duration_ms,
            meta={"superseded": superseded} if superseded else None,
        )

    def _record_failure(
        self,
        key: str,
        record: SchedulingRecord,
        now: int,
        error: Exception,
        *,
        superseded: bool,
    ) -> None:
        category = classify_exception(error)
        message = truncate_error(error)
        updated = replace(record, last_build_at=now, last_build_status=BuildStatus.ERROR, last_error=message)

        if superseded:
            self._store.put(key, updated)
            emit_event(
                logger,
                f"Build webhook failed ({message}); a newer request already replaced this run.",
                level="WARNING",
                event="build_failed",
                scheduler_key=key,
                stage="execute",
                outcome="error",
                error_category=category.value,
            )
            return

        retry_count = record.retry_count + 1
        if not is_retryable(category):
            self._store.put(key, replace(updated, retry_count=retry_count, scheduled_for=None))
            self._timer.cancel(key)
            emit_event(
                logger,
                f"Build webhook failed permanently (attempt {retry_count}): {message}",
                level="ERROR",
                event="build_failed",
                scheduler_key=key,
                stage="execute",
                outcome="error",
                retry_count=retry_count,
                error_category=category.value,
            )
            return

        next_alarm = now + retry_delay_ms(retry_count)
        self._store.put(key, replace(updated, retry_count=retry_count, scheduled_for=next_alarm))
        self._timer.arm(key, next_alarm)
        emit_event(
            logger,
            f"Build webhook failed (attempt {retry_count}). Retrying at {to_iso(next_alarm)}: {message}",
            level="ERROR",
            event="build_failed",
            scheduler_key=key,
            stage="retry",
            outcome="error",
            retry_count=retry_count,
            scheduled_for=to_iso(next_alarm),
            error_category=category.value,
        )

    def state(self, key: str) -> SchedulerState:
        return derive_state(self._load(key), executing=key in self._executing)

    def get_status(self, key: str) -> SchedulerStatus:
        record = self._load(key)
        return SchedulerStatus(
            last_webhook_at=to_iso(record.last_webhook_at),
            scheduled_for=to_iso(record.scheduled_for),
            last_build_at=to_iso(record.last_build_at),
            last_build_status=record.last_build_status.value if record.last_build_status else None,
            last_error=record.last_error,
            retry_count=record.retry_count or 0,
            delay_ms=record.delay_ms,
            webhook_url=record.webhook_url,
            state=derive_state(record, executing=key in self._executing),
        )

    def resume_pending(self) -> int:
        """Re-arm alarms for every persisted schedule; overdue ones fire right away."""
        count = 0
        for key, record in self._store.list_scheduled():
            if record.scheduled_for is None:
                continue
            self._timer.arm(key, record.scheduled_for)
            count += 1
        if count:
            logger.info(f"Resumed {count} pending schedule(s) from storage")
        return count

    async def shutdown(self) -> None:
        self._timer.cancel_all()
        await self._timer.drain()
