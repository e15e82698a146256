from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Iterator, List, NamedTuple, Tuple

import numpy as np


def _freeze_array(array: np.ndarray, *, dtype: np.dtype | type, name: str) -> np.ndarray:
    """Return a read-only, C-contiguous 1D copy of `array`."""
    arr = np.array(array, dtype=dtype, copy=True, order="C")
    if arr.ndim != 1:
        raise ValueError(f"{name} must be 1D, got {arr.ndim}D")
    arr.setflags(write=False)
    return arr


def _freeze_times(array: np.ndarray) -> np.ndarray:
    """Like `_freeze_array` for timestamps; refuses lossy integer casts."""
    raw = np.asarray(array)
    if raw.dtype.kind not in "iu":
        values = raw.astype(np.float64)
        if not np.all(np.isfinite(values)):
            raise ValueError("timestamps must be finite")
        if np.any(values != np.floor(values)):
            raise ValueError("timestamps must be whole microseconds")
    return _freeze_array(raw, dtype=np.int64, name="t")


# ----------------------------
# Captured samples
# ----------------------------

@dataclass(frozen=True)
class Sample:
    """One captured event: a timestamp in microseconds and two channel values."""

    t: int
    ch1: float
    ch2: float

    def __post_init__(self) -> None:
        if int(self.t) != self.t or self.t < 0:
            raise ValueError("t must be a non-negative integer (microseconds)")
        if not (math.isfinite(self.ch1) and math.isfinite(self.ch2)):
            raise ValueError("channel values must be finite")
        object.__setattr__(self, "t", int(self.t))

    @property
    def time_secs(self) -> float:
        return self.t / 1_000_000.0


@dataclass(frozen=True, eq=False)
class SampleSequence:
    """
    Frozen, ordered trace of samples stored as three parallel NumPy arrays.

    Timestamps must be non-decreasing; duplicates are allowed because devices
    can report back-to-back events within one timer tick.
    """

    t: np.ndarray
    ch1: np.ndarray
    ch2: np.ndarray

    def __post_init__(self) -> None:
        t = _freeze_times(self.t)
        ch1 = _freeze_array(self.ch1, dtype=np.float64, name="ch1")
        ch2 = _freeze_array(self.ch2, dtype=np.float64, name="ch2")
        if not (t.size == ch1.size == ch2.size):
            raise ValueError("t, ch1 and ch2 must have the same length")
        if t.size > 1 and np.any(np.diff(t) < 0):
            raise ValueError("timestamps must be non-decreasing")
        if not (np.all(np.isfinite(ch1)) and np.all(np.isfinite(ch2))):
            raise ValueError("channel values must be finite")
        object.__setattr__(self, "t", t)
        object.__setattr__(self, "ch1", ch1)
        object.__setattr__(self, "ch2", ch2)

    @classmethod
    def from_arrays(cls, t, ch1, ch2) -> "SampleSequence":
        return cls(np.asarray(t), np.asarray(ch1), np.asarray(ch2))

    @classmethod
    def from_samples(cls, samples: Iterable[Sample]) -> "SampleSequence":
        items = list(samples)
        return cls(
            np.fromiter((s.t for s in items), dtype=np.int64, count=len(items)),
            np.fromiter((s.ch1 for s in items), dtype=np.float64, count=len(items)),
            np.fromiter((s.ch2 for s in items), dtype=np.float64, count=len(items)),
        )

    @classmethod
    def empty(cls) -> "SampleSequence":
        return cls(np.zeros(0, dtype=np.int64), np.zeros(0), np.zeros(0))

    def __len__(self) -> int:
        return int(self.t.size)

    def __getitem__(self, index: int) -> Sample:
        return Sample(int(self.t[index]), float(self.ch1[index]), float(self.ch2[index]))

    def __iter__(self) -> Iterator[Sample]:
        for i in range(len(self)):
            yield self[i]

    def __reduce__(self):
        return (
            self.__class__,
            (np.array(self.t), np.array(self.ch1), np.array(self.ch2)),
        )

    def time_span_us(self, start: int, end: int) -> int:
        """Time covered by the half-open index range `[start, end)`."""
        if end - start <= 1:
            return 0
        return int(self.t[end - 1] - self.t[start])

    def distinct_times(self, start: int, end: int) -> int:
        """Number of distinct timestamps in `[start, end)`; relies on ordering."""
        if end <= start:
            return 0
        return int(np.count_nonzero(np.diff(self.t[start:end]))) + 1


# ----------------------------
# View output
# ----------------------------

class ViewPoint(NamedTuple):
    t_us: float
    ch1: float
    ch2: float


class ViewBuffer:
    """
    Append-only point buffer backed by preallocated NumPy arrays.

    `clear()` resets the length but keeps the allocation, so an interactive
    viewer can re-query every frame without reallocating.
    """

    def __init__(self, capacity: int = 256) -> None:
        capacity = int(capacity)
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._data = np.empty((3, capacity), dtype=np.float64)
        self._size = 0

    @property
    def capacity(self) -> int:
        return int(self._data.shape[1])

    def __len__(self) -> int:
        return self._size

    def clear(self) -> None:
        self._size = 0

    def _reserve(self, extra: int) -> None:
        needed = self._size + extra
        if needed <= self.capacity:
            return
        new_capacity = max(needed, 2 * self.capacity)
        grown = np.empty((3, new_capacity), dtype=np.float64)
        grown[:, : self._size] = self._data[:, : self._size]
        self._data = grown

    def append(self, t_us: float, ch1: float, ch2: float) -> None:
        self._reserve(1)
        self._data[:, self._size] = (t_us, ch1, ch2)
        self._size += 1

    def extend_arrays(self, t_us: np.ndarray, ch1: np.ndarray, ch2: np.ndarray) -> None:
        n = int(np.size(t_us))
        if n == 0:
            return
        self._reserve(n)
        end = self._size + n
        self._data[0, self._size:end] = t_us
        self._data[1, self._size:end] = ch1
        self._data[2, self._size:end] = ch2
        self._size = end

    def extend(self, points: Iterable[Tuple[float, float, float]]) -> None:
        for t_us, a, b in points:
            self.append(t_us, a, b)

    def _view(self, row: int) -> np.ndarray:
        view = self._data[row, : self._size]
        view.flags.writeable = False
        return view

    @property
    def times(self) -> np.ndarray:
        return self._view(0)

    @property
    def ch1(self) -> np.ndarray:
        return self._view(1)

    @property
    def ch2(self) -> np.ndarray:
        return self._view(2)

    def points(self) -> List[ViewPoint]:
        return [ViewPoint(float(t), float(a), float(b)) for t, a, b in self._data[:, : self._size].T]


def _restore_end_of_stream() -> "_EndOfStreamSentinel":
    return EndOfStream


class _EndOfStreamSentinel:
    __slots__ = ()

    def __repr__(self) -> str:
        return "EndOfStream"

    def __reduce__(self):
        return (_restore_end_of_stream, ())


EndOfStream = _EndOfStreamSentinel()


__all__ = [
    "EndOfStream",
    "Sample",
    "SampleSequence",
    "ViewPoint",
    "ViewBuffer",
]
