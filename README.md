# lakerunner

Building blocks for a telemetry data lake that stores metrics as rows keyed by
a time-series id (TID).

## Modules

- `lakerunner.sketch`: `DDSketch`, a mergeable quantile sketch with a
  `LogarithmicMapping` index mapping and a compact binary encoding
  (`DDSketch.encode` / `DDSketch.decode`). The helpers `encode_sketch`,
  `decode_sketch` (1% relative accuracy), `merge` and `merge_encoded_sketch`
  work on serialized sketches. Errors are raised as `SketchError`.
- `lakerunner.tid_accumulator`: `TidAccumulator` counts the distinct integer
  values of `_cardinalhq.tid` in the rows passed to `add`; `finalize` returns
  a `TidAccumulatorResult` with the `cardinality`. `TidAccumulatorProvider`
  hands out fresh accumulators.
- `lakerunner.tidmerge`: `TIDMerger(interval, start_ts, end_ts)` merges
  iterables of row dictionaries that are already sorted by TID. `merge`
  yields merged rows in TID order. Timestamps are aligned to the interval.
  Rows outside `[start_ts, end_ts)` are dropped and counted in
  `stats.datapoints_out_of_range`. Rows that share a TID, an aligned timestamp
  and a name have their sketches merged and their `rollup_*` fields
  recomputed. The helpers are `make_key`, `ts_in_range`, `group_tid`,
  `update_from_sketch` and `calculate_target_records_per_file`. A malformed
  record raises a `RecordError` subclass: `InvalidTIDError`,
  `InvalidTimestampError`, `InvalidNameError` or `InvalidSketchTypeError`.
- `lakerunner.metricsdb`: `item_from_record` turns a record into an `Item`
  made of `CardinalHQFields`, `RollupFields`, the sketch bytes and the
  `resource.`/`metric.`/`scope.`/`datapoint.` string tags. It raises
  `TypeError` for a missing or mistyped field. `create_table`, `insert_item`
  and `read_items` work on an SQLite `items` table. `load_items` loads
  records into an in-memory database and returns the items as read back. When
  given a filename, it also copies the database into that file with
  `VACUUM INTO`.
- `lakerunner.storageprofile`: `StorageProfile` records, served by
  `FileProvider` from a YAML list (`from_file` / `from_contents`; profiles
  without a role are marked hosted) or by `DatabaseProvider` from a fetcher
  object you supply. A failed lookup raises `StorageProfileNotFoundError`.
- `lakerunner.workqueue`: priorities per frequency,
  `frequencies_to_request(signal, action)`, and `queue_metric_compaction`,
  `queue_metric_rollup` and `queue_log_compaction`. These build a
  `WorkQueueAddParams` from a `QueueRequest`, pass it to a store's
  `work_queue_add`, and return it. `WorkqueueHandler` marks a claimed item
  complete or failed.
- `lakerunner.sweeper`: `Sweeper` repeatedly deletes the objects a store
  lists for cleanup, using a deleter callable you supply, and expires stale
  work-queue entries until a stop event is set. The single steps are also
  available as `run_object_cleaner`, `cleanup_object`, `run_workqueue_expiry`
  and `run_inqueue_expiry`.
- `lakerunner.signals`: `handle_signals` is a context manager. It yields a
  `threading.Event` that is set on SIGINT or SIGTERM.
- `lakerunner.sysinfo`: `get_cpu_quota_cores` reads the cgroup v2 or v1 CPU
  quota, and `run_sysinfo` prints a report.

## Installation

```
pip install .
```

## Command line

```
lakerunner-sysinfo
```

This prints the operating system, architecture, Python version, host and
usable CPU counts, and the cgroup CPU quota. It then runs a sanity check that
the usable CPUs match the quota, and reports the peak resident memory and the
number of garbage collections.

## Example

```python
from lakerunner.sketch import DDSketch, decode_sketch, encode_sketch, merge_encoded_sketch

a = DDSketch(0.01)
a.add(2.0, 1)
b = DDSketch(0.01)
b.add(4.0, 1)

merged = decode_sketch(merge_encoded_sketch(encode_sketch(a), encode_sketch(b)))
print(merged.get_count())  # 2.0
```

```python
from lakerunner.tid_accumulator import TidAccumulator

acc = TidAccumulator()
for row in [{"_cardinalhq.tid": 1}, {"_cardinalhq.tid": 1}, {"_cardinalhq.tid": 2}]:
    acc.add(row)
print(acc.finalize().cardinality)  # 2
```

## What this package does not do

- It does not read or write Parquet files. `TIDMerger` and `load_items` take
  rows as Python mappings, and reading them from files is up to the caller.
- It does not talk to object storage or to a database server. The sweeper's
  deleter, the work-queue and sweeper stores, and the storage-profile fetcher
  are objects the caller provides.
- It does not set up telemetry export. Its only command is
  `lakerunner-sysinfo`; there is no command that runs the sweeper or the
  work-queue workers.

## Tests

```
pip install .[test]
pytest
```