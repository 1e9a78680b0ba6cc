"""Work-queue scheduling for metric compaction, metric rollups and log compaction."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from uuid import UUID

__all__ = [
    "Signal",
    "Action",
    "WorkResult",
    "TimeRange",
    "WorkQueueAddParams",
    "QueueRequest",
    "priority_for_frequency_for_compaction",
    "priority_for_frequency_for_rollup",
    "frequencies_to_request",
    "queue_metric_compaction",
    "queue_metric_rollup",
    "queue_log_compaction",
    "WorkqueueHandler",
]

log = logging.getLogger(__name__)

ACCEPTED_METRIC_FREQUENCIES: tuple[int, ...] = (10_000, 60_000, 300_000, 1_200_000, 3_600_000)

# Each frequency mapped to the coarser frequency it rolls up into.
ROLLUP_NOTIFICATIONS: dict[int, int] = {
    10_000: 60_000,
    60_000: 300_000,
    300_000: 1_200_000,
    1_200_000: 3_600_000,
}

# Each rolled-up frequency mapped to the finer frequency it is built from.
ROLLUP_SOURCES: dict[int, int] = {dst: src for src, dst in ROLLUP_NOTIFICATIONS.items()}

_COMPACTION_PRIORITIES = {10_000: 1001, 60_000: 801, 300_000: 601, 1_200_000: 401, 3_600_000: 201}
_ROLLUP_PRIORITIES = {10_000: 1000, 60_000: 800, 300_000: 600, 1_200_000: 400, 3_600_000: 200}

_LOG_COMPACTION_SETTLE = timedelta(minutes=5)
_DAY = timedelta(days=1)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Signal(str, enum.Enum):
    LOGS = "logs"
    METRICS = "metrics"


class Action(str, enum.Enum):
    COMPACT = "compact"
    ROLLUP = "rollup"


class WorkResult(enum.IntEnum):
    SUCCESS = 0
    TRY_AGAIN_LATER = 1


@dataclass(frozen=True)
class TimeRange:
    """A half-open time range: ``start`` inclusive, ``end`` exclusive."""

    start: datetime | None
    end: datetime | None


@dataclass(frozen=True)
class WorkQueueAddParams:
    """A work item to be placed on the queue."""

    org_id: UUID
    instance: int
    signal: Signal
    action: Action
    dateint: int
    frequency: int
    ts_range: TimeRange
    runnable_at: datetime
    priority: int = 0


class _WorkQueueStore(Protocol):
    def work_queue_add(self, params: WorkQueueAddParams) -> Any: ...

    def work_queue_complete(self, item_id: Any, worker_id: int) -> Any: ...

    def work_queue_fail(self, item_id: Any, worker_id: int) -> Any: ...


@dataclass(frozen=True)
class QueueRequest:
    """The organization, instance, frequency and time range that a queued job covers."""

    organization_id: UUID
    instance_num: int
    frequency_ms: int
    ts_range: TimeRange

    @classmethod
    def from_workable(cls, workable: Any) -> "QueueRequest":
        return cls(
            organization_id=workable.organization_id,
            instance_num=workable.instance_num,
            frequency_ms=workable.frequency_ms,
            ts_range=workable.ts_range,
        )

    @classmethod
    def from_inqueue(
        cls, organization_id: UUID, instance_num: int, frequency: int, start_ts: int
    ) -> "QueueRequest":
        """Build a request covering one ``frequency`` window starting at ``start_ts`` (ms)."""
        start = _from_ms(start_ts)
        return cls(
            organization_id=organization_id,
            instance_num=instance_num,
            frequency_ms=frequency,
            ts_range=TimeRange(start, start + timedelta(milliseconds=frequency)),
        )


def _from_ms(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def _to_ms(moment: datetime) -> int:
    return (moment.astimezone(timezone.utc) - _EPOCH) // timedelta(milliseconds=1)


def _truncate(moment: datetime, step: timedelta) -> datetime:
    step_ms = step // timedelta(milliseconds=1)
    ms = _to_ms(moment)
    return _from_ms(ms - ms % step_ms)


def _dateint(moment: datetime) -> int:
    utc = moment.astimezone(timezone.utc)
    return utc.year * 10_000 + utc.month * 100 + utc.day


def _range_start(ts_range: TimeRange | None) -> datetime | None:
    if ts_range is None or ts_range.start is None or ts_range.end is None:
        return None
    start = ts_range.start
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    return start.astimezone(timezone.utc)


def priority_for_frequency_for_compaction(frequency: int) -> int:
    return _COMPACTION_PRIORITIES.get(frequency, 0)


def priority_for_frequency_for_rollup(frequency: int) -> int:
    return _ROLLUP_PRIORITIES.get(frequency, 0)


def frequencies_to_request(signal: str, action: str) -> list[int]:
    """The frequencies a worker for ``signal``/``action`` should ask the queue for."""
    if signal == Signal.LOGS:
        if action == Action.COMPACT:
            return [-1]
        raise ValueError(f"unknown action for logs signal: {action}")
    if signal == Signal.METRICS:
        if action == Action.COMPACT:
            return list(ACCEPTED_METRIC_FREQUENCIES)
        if action == Action.ROLLUP:
            return list(ROLLUP_SOURCES)
        raise ValueError(f"unknown action for metrics signal: {action}")
    raise ValueError(f"unknown signal type: {signal}")


def _parent_window(start: datetime, upstream: timedelta) -> tuple[datetime, datetime]:
    parent_start = _truncate(start, upstream)
    return parent_start, parent_start + upstream


def queue_metric_compaction(
    store: _WorkQueueStore, request: QueueRequest
) -> WorkQueueAddParams | None:
    """Queue compaction of the upstream window containing the request; return what was queued."""
    upstream_frequency = ROLLUP_NOTIFICATIONS.get(request.frequency_ms)
    if upstream_frequency is None:
        return None
    start = _range_start(request.ts_range)
    if start is None:
        log.error("invalid time range for metric compaction: %r", request.ts_range)
        return None

    upstream = timedelta(milliseconds=upstream_frequency)
    parent_start, parent_end = _parent_window(start, upstream)
    params = WorkQueueAddParams(
        org_id=request.organization_id,
        instance=request.instance_num,
        signal=Signal.METRICS,
        action=Action.COMPACT,
        dateint=_dateint(parent_start),
        frequency=request.frequency_ms,
        ts_range=TimeRange(parent_start, parent_end),
        runnable_at=parent_start + upstream * 2,
        priority=priority_for_frequency_for_compaction(request.frequency_ms),
    )
    store.work_queue_add(params)
    return params


def queue_metric_rollup(store: _WorkQueueStore, request: QueueRequest) -> WorkQueueAddParams | None:
    """Queue a rollup into the next coarser frequency; return what was queued."""
    upstream_frequency = ROLLUP_NOTIFICATIONS.get(request.frequency_ms)
    if upstream_frequency is None:
        log.warning("unknown frequency for rollup: %d", request.frequency_ms)
        return None
    start = _range_start(request.ts_range)
    if start is None:
        log.error("invalid time range for metric rollup: %r", request.ts_range)
        return None

    upstream = timedelta(milliseconds=upstream_frequency)
    parent_start, parent_end = _parent_window(start, upstream)
    params = WorkQueueAddParams(
        org_id=request.organization_id,
        instance=request.instance_num,
        signal=Signal.METRICS,
        action=Action.ROLLUP,
        dateint=_dateint(parent_start),
        frequency=upstream_frequency,
        ts_range=TimeRange(parent_start, parent_end),
        runnable_at=parent_start + upstream * 2,
        priority=priority_for_frequency_for_rollup(upstream_frequency),
    )
    store.work_queue_add(params)
    return params


def queue_log_compaction(
    store: _WorkQueueStore, request: QueueRequest, now: datetime | None = None
) -> WorkQueueAddParams | None:
    """Queue compaction of the whole day containing the request; return what was queued."""
    start = _range_start(request.ts_range)
    if start is None:
        log.error("invalid time range for log compaction notification: %r", request.ts_range)
        return None
    now = now if now is not None else datetime.now(timezone.utc)

    parent_start, parent_end = _parent_window(start, _DAY)
    params = WorkQueueAddParams(
        org_id=request.organization_id,
        instance=request.instance_num,
        signal=Signal.LOGS,
        action=Action.COMPACT,
        dateint=_dateint(parent_start),
        frequency=-1,
        ts_range=TimeRange(parent_start, parent_end),
        runnable_at=now.astimezone(timezone.utc) + _LOG_COMPACTION_SETTLE,
    )
    store.work_queue_add(params)
    return params


class WorkqueueHandler:
    """Marks one claimed work item as completed or failed, logging store errors."""

    def __init__(self, store: _WorkQueueStore, item_id: Any, worker_id: int) -> None:
        self.store = store
        self.item_id = item_id
        self.worker_id = worker_id

    def complete_work(self) -> None:
        try:
            self.store.work_queue_complete(self.item_id, self.worker_id)
        except Exception as err:
            log.error("WorkQueueComplete failed: %s", err)

    def retry_work(self) -> None:
        try:
            self.store.work_queue_fail(self.item_id, self.worker_id)
        except Exception as err:
            log.error("WorkQueueFail failed: %s", err)