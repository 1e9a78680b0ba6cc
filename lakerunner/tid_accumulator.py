"""Accumulates the number of distinct TIDs seen in a stream of rows."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

__all__ = ["TidAccumulatorResult", "TidAccumulator", "TidAccumulatorProvider"]

TID_FIELD = "_cardinalhq.tid"


@dataclass(frozen=True)
class TidAccumulatorResult:
    """The number of unique TIDs seen."""

    cardinality: int


class TidAccumulator:
    """Collects the distinct integer TIDs of the rows it is given."""

    def __init__(self) -> None:
        self._tids: set[int] = set()

    def add(self, row: Mapping[str, Any]) -> None:
        tid = row.get(TID_FIELD)
        if isinstance(tid, int) and not isinstance(tid, bool):
            self._tids.add(tid)

    def finalize(self) -> TidAccumulatorResult:
        return TidAccumulatorResult(cardinality=len(self._tids))


class TidAccumulatorProvider:
    """Creates a fresh accumulator for each output file."""

    def new_accumulator(self) -> TidAccumulator:
        return TidAccumulator()