"""Merging of metric rows that share a TID, rolling their sketches up into one interval."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, MutableMapping, Sequence

from lakerunner.sketch import DDSketch, SketchError, decode_sketch, encode_sketch

__all__ = [
    "RecordError",
    "InvalidTIDError",
    "InvalidTimestampError",
    "InvalidNameError",
    "InvalidSketchTypeError",
    "MergeStats",
    "MergeKey",
    "TIDMerger",
    "ts_in_range",
    "make_key",
    "update_from_sketch",
    "group_tid",
    "calculate_target_records_per_file",
]

log = logging.getLogger(__name__)

TID_FIELD = "_cardinalhq.tid"
TIMESTAMP_FIELD = "_cardinalhq.timestamp"
NAME_FIELD = "_cardinalhq.name"
SKETCH_FIELD = "sketch"

_QUANTILES = (0.25, 0.50, 0.75, 0.90, 0.95, 0.99)
_QUANTILE_FIELDS = ("rollup_p25", "rollup_p50", "rollup_p75", "rollup_p90", "rollup_p95", "rollup_p99")

Row = MutableMapping[str, Any]


class RecordError(ValueError):
    """A record is missing a field or holds one of the wrong type."""

    default_message = "invalid record"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class InvalidTIDError(RecordError):
    default_message = "record does not contain a valid int64 _cardinalhq.tid"


class InvalidTimestampError(RecordError):
    default_message = "record does not contain a valid int64 _cardinalhq.timestamp"


class InvalidNameError(RecordError):
    default_message = "record does not contain a valid string _cardinalhq.name"


class InvalidSketchTypeError(RecordError):
    default_message = "invalid sketch type, expected []byte or string"


@dataclass
class MergeStats:
    """Counters gathered while merging."""

    datapoints_out_of_range: int = 0


@dataclass(frozen=True)
class MergeKey:
    """Identifies the rows that are merged into one."""

    tid: int
    timestamp: int
    name: str


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _align(ts: int, interval: int) -> int:
    """Round ``ts`` toward zero to a multiple of ``interval``."""
    quotient = abs(ts) // abs(interval)
    if (ts < 0) != (interval < 0):
        quotient = -quotient
    return quotient * interval


def _timestamp_of(rec: Row) -> int | None:
    ts = rec.get(TIMESTAMP_FIELD)
    return ts if _is_int(ts) else None


def ts_in_range(ts: int, start_ts: int, end_ts: int) -> bool:
    """True when ``start_ts <= ts < end_ts``."""
    return start_ts <= ts < end_ts


def make_key(rec: Row, interval: int) -> tuple[MergeKey, bytes]:
    """Return the merge key of a record, its timestamp aligned to ``interval``, and its sketch bytes."""
    tid = rec.get(TID_FIELD)
    if not _is_int(tid):
        raise InvalidTIDError()
    timestamp = _timestamp_of(rec)
    if timestamp is None:
        raise InvalidTimestampError()
    name = rec.get(NAME_FIELD)
    if not isinstance(name, str):
        raise InvalidNameError()
    sketch = rec.get(SKETCH_FIELD)
    if isinstance(sketch, (bytes, bytearray)):
        sketch_bytes = bytes(sketch)
    elif isinstance(sketch, str):
        sketch_bytes = sketch.encode("utf-8")
    else:
        raise InvalidSketchTypeError()
    return MergeKey(tid=tid, timestamp=_align(timestamp, interval), name=name), sketch_bytes


def update_from_sketch(row: Row, sketch: DDSketch) -> None:
    """Recompute the rollup fields and the encoded sketch of ``row`` from ``sketch``."""
    count = sketch.get_count()
    total = sketch.get_sum()
    row["rollup_count"] = count
    row["rollup_sum"] = total
    row["rollup_avg"] = total / count if count else float("nan")

    try:
        row["rollup_max"] = sketch.get_max_value()
    except SketchError as err:
        raise SketchError(f"getting max value from sketch: {err}") from err
    try:
        row["rollup_min"] = sketch.get_min_value()
    except SketchError as err:
        raise SketchError(f"getting min value from sketch: {err}") from err
    try:
        quantiles = sketch.get_values_at_quantiles(_QUANTILES)
    except SketchError as err:
        raise SketchError(f"getting quantiles from sketch: {err}") from err
    row.update(zip(_QUANTILE_FIELDS, quantiles))

    row[SKETCH_FIELD] = encode_sketch(sketch)


def group_tid(prev: Row, current: Row) -> bool:
    """True when both rows carry the same integer TID."""
    ptid = prev.get(TID_FIELD)
    ctid = current.get(TID_FIELD)
    if not _is_int(ptid) or not _is_int(ctid):
        return False
    return ptid == ctid


def calculate_target_records_per_file(
    record_count: int, estimated_bytes_per_record: int, target_file_size: int
) -> int:
    """How many records each file should hold so files stay near ``target_file_size``."""
    if record_count <= 0 or estimated_bytes_per_record <= 0 or target_file_size <= 0:
        return 0
    total_size = record_count * estimated_bytes_per_record
    if total_size <= target_file_size:
        return record_count
    files_needed = min(-(-total_size // target_file_size), record_count)
    return -(-record_count // files_needed)


class _Accumulator:
    __slots__ = ("row", "sketch", "contributions")

    def __init__(self, row: Row, sketch: DDSketch) -> None:
        self.row = row
        self.sketch = sketch
        self.contributions = 1


class _Cursor:
    """The current row of one TID-sorted input stream."""

    def __init__(self, rows: Iterable[Row], label: str) -> None:
        self._rows = iter(rows)
        self._label = label
        self.closed = False
        self.current: Row | None = None
        self.current_tid = 0
        self.advance()

    def advance(self) -> None:
        try:
            row = next(self._rows)
        except StopIteration:
            self.closed = True
            self.current = None
            return
        tid = row.get(TID_FIELD)
        if not _is_int(tid):
            raise InvalidTIDError(f"{self._label}: row does not contain a valid int64 _cardinalhq.tid")
        self.current = row
        self.current_tid = tid


class TIDMerger:
    """Merges TID-sorted row streams, combining rows that fall into the same interval.

    ``start_ts`` is inclusive and ``end_ts`` exclusive; the span between them must be a
    whole number of intervals.
    """

    def __init__(self, interval: int, start_ts: int, end_ts: int) -> None:
        if interval == 0:
            raise ValueError("interval must not be zero")
        if (end_ts - start_ts) % interval != 0:
            raise ValueError(
                f"startTS {start_ts} and endTS {end_ts} must be aligned with interval {interval}"
            )
        self.interval = interval
        self.start_ts = start_ts
        self.end_ts = end_ts
        self.stats = MergeStats()

    def merge_rows(self, rows: Sequence[Row]) -> list[Row]:
        """Combine rows sharing a TID into one row per (tid, interval, name)."""
        if not rows:
            return []
        if len(rows) == 1:
            row = rows[0]
            ts = _timestamp_of(row)
            if ts is None:
                log.error("Row does not contain a valid int64 _cardinalhq.timestamp: %r", row)
                return []
            if not ts_in_range(ts, self.start_ts, self.end_ts):
                self.stats.datapoints_out_of_range += 1
                log.warning(
                    "Row timestamp %d out of range [%d, %d)", ts, self.start_ts, self.end_ts
                )
                return []
            row[TIMESTAMP_FIELD] = _align(ts, self.interval)
            return [row]

        merged: dict[MergeKey, _Accumulator] = {}
        for row in rows:
            ts = _timestamp_of(row)
            if ts is None:
                log.error("Row does not contain a valid int64 _cardinalhq.timestamp: %r", row)
                continue
            if not ts_in_range(ts, self.start_ts, self.end_ts):
                self.stats.datapoints_out_of_range += 1
                continue
            try:
                key, sketch_bytes = make_key(row, self.interval)
            except RecordError as err:
                log.error("Failed to make key for row: %s", err)
                continue
            try:
                sketch = decode_sketch(sketch_bytes)
            except SketchError as err:
                log.error("Failed to decode sketch: %s", err)
                continue

            acc = merged.get(key)
            if acc is None:
                merged[key] = _Accumulator(row, sketch)
                continue
            acc.contributions += 1
            try:
                acc.sketch.merge_with(sketch)
            except SketchError as err:
                log.error("Failed to merge sketch: %s", err)

        result = []
        for key, acc in merged.items():
            if acc.contributions > 1:
                try:
                    update_from_sketch(acc.row, acc.sketch)
                except SketchError as err:
                    log.error("Failed to update row from sketch: %s", err)
                    continue
            acc.row[TIMESTAMP_FIELD] = key.timestamp
            result.append(acc.row)
        return result

    def merge(self, streams: Sequence[Iterable[Row]]) -> Iterator[Row]:
        """Merge streams already sorted by TID, yielding merged rows in TID order."""
        streams = list(streams)
        if not streams:
            raise ValueError("invalid merge config: no files to merge in TIDMerger")
        return self._merge(streams)

    def _merge(self, streams: list[Iterable[Row]]) -> Iterator[Row]:
        cursors = [_Cursor(rows, f"stream {i}") for i, rows in enumerate(streams)]
        while True:
            open_cursors = [c for c in cursors if not c.closed]
            if not open_cursors:
                return
            smallest = min(c.current_tid for c in open_cursors)
            grouped: list[Row] = []
            for cursor in open_cursors:
                while not cursor.closed and cursor.current_tid == smallest:
                    grouped.append(cursor.current)
                    cursor.advance()
            yield from self.merge_rows(grouped)