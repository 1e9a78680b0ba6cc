"""Metric rows held in a SQLite table of rollups, sketches and tags."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

__all__ = [
    "CardinalHQFields",
    "RollupFields",
    "Item",
    "item_from_record",
    "create_table",
    "insert_item",
    "read_items",
    "load_items",
]

log = logging.getLogger(__name__)

_TAG_PREFIXES = ("resource.", "metric.", "scope.", "datapoint.")

_CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS items (
  "_cardinalhq.metric_type"    TEXT    NOT NULL,
  "_cardinalhq.tid"            BIGINT  NOT NULL,
  "_cardinalhq.telemetry_type" TEXT    NOT NULL,
  "_cardinalhq.customer_id"    TEXT    NOT NULL,
  "_cardinalhq.name"           TEXT    NOT NULL,
  "_cardinalhq.timestamp"      BIGINT  NOT NULL,
  "_cardinalhq.collector_id"   TEXT    NOT NULL,

  "rollup_avg"   DOUBLE    NOT NULL,
  "rollup_count" DOUBLE    NOT NULL,
  "rollup_max"   DOUBLE    NOT NULL,
  "rollup_min"   DOUBLE    NOT NULL,
  "rollup_p25"   DOUBLE    NOT NULL,
  "rollup_p50"   DOUBLE    NOT NULL,
  "rollup_p75"   DOUBLE    NOT NULL,
  "rollup_p90"   DOUBLE    NOT NULL,
  "rollup_p95"   DOUBLE    NOT NULL,
  "rollup_p99"   DOUBLE    NOT NULL,
  "rollup_sum"   DOUBLE    NOT NULL,

  "sketch" BLOB    NOT NULL,
  "tags"   TEXT    NOT NULL
)
"""

_CREATE_INDEX_SQL = (
    'CREATE INDEX IF NOT EXISTS idx_items_tid ON items('
    '"_cardinalhq.tid", "_cardinalhq.name", "_cardinalhq.timestamp")'
)

_INSERT_SQL = """
INSERT INTO items (
  "_cardinalhq.metric_type",
  "_cardinalhq.tid",
  "_cardinalhq.telemetry_type",
  "_cardinalhq.customer_id",
  "_cardinalhq.name",
  "_cardinalhq.timestamp",
  "_cardinalhq.collector_id",
  "rollup_avg",
  "rollup_count",
  "rollup_max",
  "rollup_min",
  "rollup_p25",
  "rollup_p50",
  "rollup_p75",
  "rollup_p90",
  "rollup_p95",
  "rollup_p99",
  "rollup_sum",
  "sketch",
  "tags"
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


@dataclass
class CardinalHQFields:
    """The ``_cardinalhq.*`` columns of a metric row."""

    metric_type: str
    tid: int
    telemetry_type: str
    customer_id: str
    name: str
    timestamp: int
    collector_id: str


@dataclass
class RollupFields:
    """The ``rollup_*`` columns of a metric row."""

    avg: float
    count: float
    max: float
    min: float
    p25: float
    p50: float
    p75: float
    p90: float
    p95: float
    p99: float
    sum: float


@dataclass
class Item:
    """One metric row: identity fields, rollups, the encoded sketch and its tags."""

    cardinal: CardinalHQFields
    rollup: RollupFields
    sketch: bytes
    other: dict[str, str] = field(default_factory=dict)


def _type_name(value: Any) -> str:
    return "nil" if value is None else type(value).__name__


def _require_str(rec: Mapping[str, Any], key: str) -> str:
    value = rec.get(key)
    if not isinstance(value, str):
        raise TypeError(f"expected {key} as string, got {_type_name(value)}")
    return value


def _require_int(rec: Mapping[str, Any], key: str) -> int:
    value = rec.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"expected {key} as int64, got {_type_name(value)}")
    return value


def _require_float(rec: Mapping[str, Any], key: str) -> float:
    value = rec.get(key)
    if not isinstance(value, float):
        raise TypeError(f"expected {key} as float64, got {_type_name(value)}")
    return value


def item_from_record(rec: Mapping[str, Any]) -> Item:
    """Build an item from a record, raising TypeError for a missing or mistyped field."""
    cardinal = CardinalHQFields(
        metric_type=_require_str(rec, "_cardinalhq.metric_type"),
        tid=_require_int(rec, "_cardinalhq.tid"),
        telemetry_type=_require_str(rec, "_cardinalhq.telemetry_type"),
        customer_id=_require_str(rec, "_cardinalhq.customer_id"),
        name=_require_str(rec, "_cardinalhq.name"),
        timestamp=_require_int(rec, "_cardinalhq.timestamp"),
        collector_id=_require_str(rec, "_cardinalhq.collector_id"),
    )
    rollup = RollupFields(
        avg=_require_float(rec, "rollup_avg"),
        count=_require_float(rec, "rollup_count"),
        max=_require_float(rec, "rollup_max"),
        min=_require_float(rec, "rollup_min"),
        p25=_require_float(rec, "rollup_p25"),
        p50=_require_float(rec, "rollup_p50"),
        p75=_require_float(rec, "rollup_p75"),
        p90=_require_float(rec, "rollup_p90"),
        p95=_require_float(rec, "rollup_p95"),
        p99=_require_float(rec, "rollup_p99"),
        sum=_require_float(rec, "rollup_sum"),
    )

    raw_sketch = rec.get("sketch")
    if isinstance(raw_sketch, (bytes, bytearray)):
        sketch = bytes(raw_sketch)
    elif isinstance(raw_sketch, str):
        sketch = raw_sketch.encode("utf-8")
    else:
        raise TypeError(f"expected sketch as []byte or string, got {_type_name(raw_sketch)}")

    tags = {
        key: value
        for key, value in rec.items()
        if key.startswith(_TAG_PREFIXES) and isinstance(value, str)
    }
    return Item(cardinal=cardinal, rollup=rollup, sketch=sketch, other=tags)


def create_table(conn: sqlite3.Connection) -> None:
    """Drop and recreate the ``items`` table and its index."""
    try:
        conn.execute("DROP TABLE IF EXISTS items")
    except sqlite3.Error as err:
        raise sqlite3.OperationalError(f"dropping table: {err}") from err
    try:
        conn.execute(_CREATE_TABLE_SQL)
    except sqlite3.Error as err:
        raise sqlite3.OperationalError(f"creating table: {err}") from err
    try:
        conn.execute(_CREATE_INDEX_SQL)
    except sqlite3.Error as err:
        raise sqlite3.OperationalError(f"creating index: {err}") from err


def insert_item(conn: sqlite3.Connection, item: Item) -> None:
    """Insert one item, its tags stored as a JSON object."""
    tags_json = json.dumps(item.other, sort_keys=True, separators=(",", ":"))
    c, r = item.cardinal, item.rollup
    try:
        conn.execute(
            _INSERT_SQL,
            (
                c.metric_type,
                c.tid,
                c.telemetry_type,
                c.customer_id,
                c.name,
                c.timestamp,
                c.collector_id,
                r.avg,
                r.count,
                r.max,
                r.min,
                r.p25,
                r.p50,
                r.p75,
                r.p90,
                r.p95,
                r.p99,
                r.sum,
                item.sketch,
                tags_json,
            ),
        )
    except sqlite3.Error as err:
        raise sqlite3.OperationalError(f"inserting item: {err}") from err


def read_items(conn: sqlite3.Connection) -> list[Item]:
    """Read every row of the ``items`` table back into items."""
    items = []
    for row in conn.execute("SELECT * FROM items"):
        (
            metric_type, tid, telemetry_type, customer_id, name, timestamp, collector_id,
            avg, count, max_, min_, p25, p50, p75, p90, p95, p99, sum_,
            sketch, tags,
        ) = row
        try:
            other = json.loads(tags)
        except json.JSONDecodeError as err:
            raise ValueError(f"failed to unmarshal tags JSON: {err}") from err
        items.append(
            Item(
                cardinal=CardinalHQFields(
                    metric_type=metric_type,
                    tid=tid,
                    telemetry_type=telemetry_type,
                    customer_id=customer_id,
                    name=name,
                    timestamp=timestamp,
                    collector_id=collector_id,
                ),
                rollup=RollupFields(
                    avg=avg, count=count, max=max_, min=min_,
                    p25=p25, p50=p50, p75=p75, p90=p90, p95=p95, p99=p99, sum=sum_,
                ),
                sketch=bytes(sketch),
                other=other,
            )
        )
    return items


def load_items(records: Iterable[Mapping[str, Any]], filename: str | None = None) -> list[Item]:
    """Load records into an in-memory database and return them as read back.

    When ``filename`` is given the database is copied into that file.
    """
    with closing(sqlite3.connect(":memory:")) as conn:
        create_table(conn)
        for rec in records:
            insert_item(conn, item_from_record(rec))
        conn.commit()
        items = read_items(conn)
        if filename:
            try:
                conn.execute("VACUUM INTO ?", (str(filename),))
            except sqlite3.Error as err:
                raise sqlite3.OperationalError(
                    f"failed to vacuum into file {filename}: {err}"
                ) from err
            log.info("SQLite database vacuumed into file %s", filename)
    return items