"""DDSketch quantile sketches with a logarithmic index mapping and a compact binary encoding."""

from __future__ import annotations

import math
import struct
import sys
from typing import Iterable, Iterator

__all__ = [
    "SketchError",
    "LogarithmicMapping",
    "DDSketch",
    "encode_sketch",
    "decode_sketch",
    "merge",
    "merge_encoded_sketch",
]

DEFAULT_RELATIVE_ACCURACY = 0.01

_MASK64 = (1 << 64) - 1
_MAX_VAR_LEN = 9
_MIN_INT32 = -(2**31)
_MAX_INT32 = 2**31 - 1
_EXP_OVERFLOW = 7.094361393031e02
_TOLERANCE = 1e-12

# Flag types live in the two low bits of a flag byte, sub-flags in the six high bits.
_FLAG_TYPE_SKETCH_FEATURES = 0b00
_FLAG_TYPE_POSITIVE_STORE = 0b01
_FLAG_TYPE_INDEX_MAPPING = 0b10
_FLAG_TYPE_NEGATIVE_STORE = 0b11

_FLAG_INDEX_MAPPING_LOGARITHMIC = _FLAG_TYPE_INDEX_MAPPING | (0 << 2)
_FLAG_ZERO_COUNT_VARFLOAT = _FLAG_TYPE_SKETCH_FEATURES | (1 << 2)

_BIN_INDEX_DELTAS_AND_COUNTS = 1
_BIN_INDEX_DELTAS = 2
_BIN_CONTIGUOUS_COUNTS = 3


class SketchError(ValueError):
    """Raised when a sketch cannot be built, queried, merged or decoded."""


def _float_bits(value: float) -> int:
    return struct.unpack("<Q", struct.pack("<d", value))[0]


def _bits_float(bits: int) -> float:
    return struct.unpack("<d", struct.pack("<Q", bits & _MASK64))[0]


_ONE_BITS = _float_bits(1.0)


def _exp(x: float) -> float:
    try:
        return math.exp(x)
    except OverflowError:
        return math.inf


def _within_tolerance(x: float, y: float, tolerance: float) -> bool:
    if x == 0 or y == 0:
        return abs(x) <= tolerance and abs(y) <= tolerance
    return abs(x - y) <= tolerance * max(abs(x), abs(y))


def _encode_uvarint(out: bytearray, value: int) -> None:
    value &= _MASK64
    for _ in range(_MAX_VAR_LEN - 1):
        if value < 0x80:
            break
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value & 0xFF)


def _encode_varint(out: bytearray, value: int) -> None:
    _encode_uvarint(out, ((value << 1) ^ (value >> 63)) & _MASK64)


def _encode_varfloat(out: bytearray, value: float) -> None:
    x = (_float_bits(value + 1) - _ONE_BITS) & _MASK64
    x = ((x << 6) | (x >> 58)) & _MASK64
    for _ in range(_MAX_VAR_LEN - 1):
        n = x >> 57
        x = (x << 7) & _MASK64
        if x == 0:
            out.append(n)
            return
        out.append(n | 0x80)
    out.append(x >> 56)


def _encode_float64le(out: bytearray, value: float) -> None:
    out += struct.pack("<d", value)


class _Reader:
    """Sequential reader over encoded sketch bytes."""

    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    def __bool__(self) -> bool:
        return self._pos < len(self._data)

    def byte(self) -> int:
        if self._pos >= len(self._data):
            raise SketchError("unexpected end of encoded sketch")
        value = self._data[self._pos]
        self._pos += 1
        return value

    def uvarint(self) -> int:
        result = 0
        shift = 0
        for i in range(_MAX_VAR_LEN):
            n = self.byte()
            if n < 0x80 or i == _MAX_VAR_LEN - 1:
                return (result | (n << shift)) & _MASK64
            result |= (n & 0x7F) << shift
            shift += 7
        raise SketchError("malformed varint")  # pragma: no cover

    def varint(self) -> int:
        u = self.uvarint()
        return (u >> 1) ^ -(u & 1)

    def varfloat(self) -> float:
        x = 0
        shift = 57
        for i in range(_MAX_VAR_LEN):
            n = self.byte()
            if i == _MAX_VAR_LEN - 1:
                x |= n
                break
            if n < 0x80:
                x |= n << shift
                break
            x |= (n & 0x7F) << shift
            shift -= 7
        x = ((x >> 6) | (x << 58)) & _MASK64
        return _bits_float(x + _ONE_BITS) - 1

    def float64le(self) -> float:
        raw = bytes(self.byte() for _ in range(8))
        return struct.unpack("<d", raw)[0]


class LogarithmicMapping:
    """Maps positive values to integer keys so that each bucket has bounded relative width."""

    def __init__(self, relative_accuracy: float) -> None:
        if not 0 < relative_accuracy < 1:
            raise SketchError("The relative accuracy must be between 0 and 1.")
        gamma = (1 + relative_accuracy) / (1 - relative_accuracy)
        self._setup(gamma, 0.0)

    @classmethod
    def with_gamma(cls, gamma: float, index_offset: float = 0.0) -> "LogarithmicMapping":
        """Build a mapping directly from its gamma and index offset."""
        if not gamma > 1:
            raise SketchError("Gamma must be greater than 1.")
        mapping = cls.__new__(cls)
        mapping._setup(gamma, index_offset)
        return mapping

    def _setup(self, gamma: float, index_offset: float) -> None:
        self.gamma = gamma
        self.index_offset = index_offset
        self.multiplier = 1 / math.log(gamma)
        self.min_indexable_value = max(
            _exp((_MIN_INT32 - index_offset) / self.multiplier + 1),
            sys.float_info.min * gamma,
        )
        self.max_indexable_value = min(
            _exp((_MAX_INT32 - index_offset) / self.multiplier - 1),
            _exp(_EXP_OVERFLOW) / (2 * gamma) * (gamma + 1),
        )

    @property
    def relative_accuracy(self) -> float:
        return 1 - 2 / (1 + self.gamma)

    def key(self, value: float) -> int:
        index = math.log(value) * self.multiplier + self.index_offset
        if index >= 0:
            return int(index)
        return int(index) - 1

    def value(self, key: int) -> float:
        return self.lower_bound(key) * (1 + self.relative_accuracy)

    def lower_bound(self, key: int) -> float:
        return _exp((key - self.index_offset) / self.multiplier)

    def encode(self, out: bytearray) -> None:
        out.append(_FLAG_INDEX_MAPPING_LOGARITHMIC)
        _encode_float64le(out, self.gamma)
        _encode_float64le(out, self.index_offset)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LogarithmicMapping):
            return NotImplemented
        return _within_tolerance(self.gamma, other.gamma, _TOLERANCE) and _within_tolerance(
            self.index_offset, other.index_offset, _TOLERANCE
        )

    def __hash__(self) -> int:
        return hash((round(self.gamma, 9), round(self.index_offset, 9)))

    def __repr__(self) -> str:
        return f"LogarithmicMapping(gamma={self.gamma!r}, index_offset={self.index_offset!r})"


class _Store:
    """Counts per key, kept sparse."""

    def __init__(self) -> None:
        self._bins: dict[int, float] = {}

    def add(self, key: int, count: float = 1.0) -> None:
        if count == 0:
            return
        self._bins[key] = self._bins.get(key, 0.0) + count

    def is_empty(self) -> bool:
        return not self._bins

    def total_count(self) -> float:
        return sum(count for _, count in self.items())

    def items(self) -> Iterator[tuple[int, float]]:
        for key in sorted(self._bins):
            yield key, self._bins[key]

    def min_key(self) -> int:
        if not self._bins:
            raise SketchError("no such element exists")
        return min(self._bins)

    def max_key(self) -> int:
        if not self._bins:
            raise SketchError("no such element exists")
        return max(self._bins)

    def key_at_rank(self, rank: float) -> int:
        rank = max(rank, 0.0)
        running = 0.0
        for key, count in self.items():
            running += count
            if running > rank:
                return key
        return self.max_key()

    def merge_with(self, other: "_Store") -> None:
        for key, count in other.items():
            self.add(key, count)

    def encode(self, out: bytearray, flag_type: int) -> None:
        if self.is_empty():
            return
        low, high = self.min_key(), self.max_key()
        out.append(flag_type | (_BIN_CONTIGUOUS_COUNTS << 2))
        _encode_uvarint(out, high - low + 1)
        _encode_varint(out, low)
        _encode_varint(out, 1)
        for key in range(low, high + 1):
            _encode_varfloat(out, self._bins.get(key, 0.0))

    def decode_and_merge(self, reader: _Reader, mode: int) -> None:
        if mode == _BIN_INDEX_DELTAS_AND_COUNTS:
            index = 0
            for _ in range(reader.uvarint()):
                index += reader.varint()
                self.add(index, reader.varfloat())
        elif mode == _BIN_INDEX_DELTAS:
            index = 0
            for _ in range(reader.uvarint()):
                index += reader.varint()
                self.add(index)
        elif mode == _BIN_CONTIGUOUS_COUNTS:
            num_bins = reader.uvarint()
            index = reader.varint()
            delta = reader.varint()
            for _ in range(num_bins):
                self.add(index, reader.varfloat())
                index += delta
        else:
            raise SketchError("unknown bin encoding")


class DDSketch:
    """A mergeable quantile sketch with relative-error guarantees."""

    def __init__(self, relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY) -> None:
        self.mapping = LogarithmicMapping(relative_accuracy)
        self._positive = _Store()
        self._negative = _Store()
        self._zero_count = 0.0

    def add(self, value: float, count: float = 1.0) -> None:
        """Add ``value`` with the given weight."""
        if count < 0:
            raise SketchError("The count cannot be negative.")
        mapping = self.mapping
        if value > mapping.min_indexable_value:
            if value > mapping.max_indexable_value:
                raise SketchError("The input value is too high and cannot be tracked by the sketch.")
            self._positive.add(mapping.key(value), count)
        elif value < -mapping.min_indexable_value:
            if value < -mapping.max_indexable_value:
                raise SketchError("The input value is too low and cannot be tracked by the sketch.")
            self._negative.add(mapping.key(-value), count)
        else:
            self._zero_count += count

    def merge_with(self, other: "DDSketch") -> None:
        """Fold the contents of ``other`` into this sketch."""
        if self.mapping != other.mapping:
            raise SketchError("Cannot merge sketches with different index mappings.")
        self._positive.merge_with(other._positive)
        self._negative.merge_with(other._negative)
        self._zero_count += other._zero_count

    def is_empty(self) -> bool:
        return self._zero_count == 0 and self._positive.is_empty() and self._negative.is_empty()

    def get_count(self) -> float:
        return self._zero_count + self._positive.total_count() + self._negative.total_count()

    def _weighted_values(self) -> Iterator[tuple[float, float]]:
        if self._zero_count != 0:
            yield 0.0, self._zero_count
        for key, count in self._positive.items():
            yield self.mapping.value(key), count
        for key, count in self._negative.items():
            yield -self.mapping.value(key), count

    def get_sum(self) -> float:
        total = 0.0
        for value, count in self._weighted_values():
            total += value * count
        return total

    def get_min_value(self) -> float:
        if not self._negative.is_empty():
            return -self.mapping.value(self._negative.max_key())
        if self._zero_count > 0:
            return 0.0
        return self.mapping.value(self._positive.min_key())

    def get_max_value(self) -> float:
        if not self._positive.is_empty():
            return self.mapping.value(self._positive.max_key())
        if self._zero_count > 0:
            return 0.0
        return -self.mapping.value(self._negative.min_key())

    def get_value_at_quantile(self, quantile: float) -> float:
        if not 0 <= quantile <= 1:
            raise SketchError("The quantile must be between 0 and 1.")
        count = self.get_count()
        if count == 0:
            raise SketchError("no such element exists")
        rank = quantile * (count - 1)
        negative_count = self._negative.total_count()
        if rank < negative_count:
            return -self.mapping.value(self._negative.key_at_rank(negative_count - 1 - rank))
        if rank < self._zero_count + negative_count:
            return 0.0
        return self.mapping.value(self._positive.key_at_rank(rank - self._zero_count - negative_count))

    def get_values_at_quantiles(self, quantiles: Iterable[float]) -> list[float]:
        return [self.get_value_at_quantile(q) for q in quantiles]

    def encode(self) -> bytes:
        """Serialize the sketch, index mapping included."""
        out = bytearray()
        if self._zero_count != 0:
            out.append(_FLAG_ZERO_COUNT_VARFLOAT)
            _encode_varfloat(out, self._zero_count)
        self.mapping.encode(out)
        self._positive.encode(out, _FLAG_TYPE_POSITIVE_STORE)
        self._negative.encode(out, _FLAG_TYPE_NEGATIVE_STORE)
        return bytes(out)

    @classmethod
    def decode(cls, data: bytes, relative_accuracy: float = DEFAULT_RELATIVE_ACCURACY) -> "DDSketch":
        """Rebuild a sketch from its encoding; any embedded mapping must match the expected one."""
        sketch = cls(relative_accuracy)
        reader = _Reader(data)
        while reader:
            flag = reader.byte()
            flag_type = flag & 0b11
            sub_flag = flag >> 2
            if flag_type == _FLAG_TYPE_POSITIVE_STORE:
                sketch._positive.decode_and_merge(reader, sub_flag)
            elif flag_type == _FLAG_TYPE_NEGATIVE_STORE:
                sketch._negative.decode_and_merge(reader, sub_flag)
            elif flag_type == _FLAG_TYPE_INDEX_MAPPING:
                if flag != _FLAG_INDEX_MAPPING_LOGARITHMIC:
                    raise SketchError("unsupported index mapping")
                gamma = reader.float64le()
                offset = reader.float64le()
                decoded = LogarithmicMapping.with_gamma(gamma, offset)
                if sketch.mapping != decoded:
                    raise SketchError("index mapping mismatch")
                sketch.mapping = decoded
            elif flag == _FLAG_ZERO_COUNT_VARFLOAT:
                sketch._zero_count += reader.varfloat()
            else:
                raise SketchError(f"unknown encoding flag 0x{flag:02x}")
        return sketch


def encode_sketch(sketch: DDSketch) -> bytes:
    """Encode a sketch including its index mapping."""
    return sketch.encode()


def decode_sketch(data: bytes) -> DDSketch:
    """Decode a sketch built with the default 1% relative accuracy."""
    return DDSketch.decode(data, DEFAULT_RELATIVE_ACCURACY)


def merge(sketch: DDSketch, other: DDSketch) -> None:
    """Merge ``other`` into ``sketch``."""
    sketch.merge_with(other)


def merge_encoded_sketch(a: bytes, b: bytes) -> bytes:
    """Decode two encoded sketches, merge them and return the merged encoding."""
    try:
        sketch_a = decode_sketch(a)
    except SketchError as err:
        raise SketchError(f"decoding sketch A: {err}") from err
    try:
        sketch_b = decode_sketch(b)
    except SketchError as err:
        raise SketchError(f"decoding sketch B: {err}") from err
    try:
        merge(sketch_a, sketch_b)
    except SketchError as err:
        raise SketchError(f"merging sketches: {err}") from err
    return encode_sketch(sketch_a)