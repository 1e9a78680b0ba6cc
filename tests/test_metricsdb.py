import sqlite3
from contextlib import closing

import pytest

from lakerunner.metricsdb import (
    CardinalHQFields,
    Item,
    RollupFields,
    create_table,
    insert_item,
    item_from_record,
    load_items,
    read_items,
)


def make_record(**overrides):
    rec = {
        "_cardinalhq.metric_type": "gauge",
        "_cardinalhq.tid": 123,
        "_cardinalhq.telemetry_type": "metrics",
        "_cardinalhq.customer_id": "cust",
        "_cardinalhq.name": "cpu.usage",
        "_cardinalhq.timestamp": 1690000061,
        "_cardinalhq.collector_id": "collector",
        "rollup_avg": 1.5,
        "rollup_count": 2.0,
        "rollup_max": 2.0,
        "rollup_min": 1.0,
        "rollup_p25": 1.0,
        "rollup_p50": 1.5,
        "rollup_p75": 2.0,
        "rollup_p90": 2.0,
        "rollup_p95": 2.0,
        "rollup_p99": 2.0,
        "rollup_sum": 3.0,
        "sketch": b"\x01\x02\x03",
        "resource.host": "host-a",
        "metric.kind": "k",
        "scope.name": "s",
        "datapoint.env": "dev",
        "resource.missing": None,
        "resource.number": 5,
        "other.field": "ignored",
    }
    rec.update(overrides)
    return rec


def test_item_from_record_fields():
    item = item_from_record(make_record())
    assert item.cardinal.tid == 123
    assert item.cardinal.name == "cpu.usage"
    assert item.cardinal.timestamp == 1690000061
    assert item.rollup.sum == 3.0
    assert item.rollup.p50 == 1.5
    assert item.sketch == b"\x01\x02\x03"


def test_item_from_record_tags_filtered():
    item = item_from_record(make_record())
    assert item.other == {
        "resource.host": "host-a",
        "metric.kind": "k",
        "scope.name": "s",
        "datapoint.env": "dev",
    }


def test_item_from_record_string_sketch():
    item = item_from_record(make_record(sketch="abc"))
    assert item.sketch == b"abc"


@pytest.mark.parametrize(
    "key, bad, expected_type",
    [
        ("_cardinalhq.tid", "x", "int64"),
        ("_cardinalhq.tid", True, "int64"),
        ("_cardinalhq.timestamp", 1.0, "int64"),
        ("_cardinalhq.name", 7, "string"),
        ("rollup_sum", 3, "float64"),
        ("rollup_p99", None, "float64"),
    ],
)
def test_item_from_record_wrong_type(key, bad, expected_type):
    with pytest.raises(TypeError, match=f"expected {key} as {expected_type}"):
        item_from_record(make_record(**{key: bad}))


def test_item_from_record_missing_field():
    rec = make_record()
    del rec["_cardinalhq.collector_id"]
    with pytest.raises(TypeError, match="_cardinalhq.collector_id as string"):
        item_from_record(rec)


def test_item_from_record_bad_sketch():
    with pytest.raises(TypeError, match="expected sketch as"):
        item_from_record(make_record(sketch=1))


def test_insert_and_read_round_trip():
    item = item_from_record(make_record())
    with closing(sqlite3.connect(":memory:")) as conn:
        create_table(conn)
        insert_item(conn, item)
        items = read_items(conn)
    assert items == [item]


def test_create_table_drops_existing_rows():
    item = item_from_record(make_record())
    with closing(sqlite3.connect(":memory:")) as conn:
        create_table(conn)
        insert_item(conn, item)
        create_table(conn)
        assert read_items(conn) == []


def test_read_items_bad_tags_json():
    with closing(sqlite3.connect(":memory:")) as conn:
        create_table(conn)
        item = Item(
            cardinal=CardinalHQFields("g", 1, "metrics", "c", "n", 2, "col"),
            rollup=RollupFields(*([0.0] * 11)),
            sketch=b"",
        )
        insert_item(conn, item)
        conn.execute('UPDATE items SET tags = ?', ("{not json",))
        with pytest.raises(ValueError, match="failed to unmarshal tags JSON"):
            read_items(conn)


def test_load_items_writes_file(tmp_path):
    target = tmp_path / "out.db"
    records = [make_record(**{"_cardinalhq.tid": tid}) for tid in (1, 2, 3)]
    items = load_items(records, str(target))
    assert [i.cardinal.tid for i in items] == [1, 2, 3]
    with closing(sqlite3.connect(target)) as conn:
        stored = read_items(conn)
    assert stored == items


def test_load_items_without_file():
    items = load_items([make_record()])
    assert items == [item_from_record(make_record())]


def test_load_items_rejects_bad_record():
    with pytest.raises(TypeError, match="rollup_avg"):
        load_items([make_record(rollup_avg="x")])