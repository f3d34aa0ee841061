"""Merge incoming points into time-ordered, duplicate-free series.

One rule set covers snapshot loading and live pushes alike:

* a point newer than the last stored one is appended,
* a point with the same time as the last one is merged into it (fields the
  new point carries overwrite, the others are kept),
* a point older than the last one is rejected and counted as stale.

Snapshot loading is a reset followed by reconciling every element in the
order it was received, so both paths give the same ordering guarantees.
"""
from __future__ import annotations

from bisect import bisect_right
from enum import Enum
from typing import Generic, Iterable, Iterator, List, Optional, Protocol, TypeVar

from ..utils.logging import get_logger

LOGGER = get_logger(__name__)


class TimedPoint(Protocol):
    @property
    def time(self) -> int: ...

    def merge(self, newer): ...


P = TypeVar("P", bound=TimedPoint)


class ReconcileOutcome(str, Enum):
    APPENDED = "appended"
    MERGED = "merged"
    STALE = "stale"


class Series(Generic[P]):
    """Ascending sequence of points keyed by ``time``."""

    def __init__(self, name: str, *, max_points: Optional[int] = None) -> None:
        self.name = name
        self._max_points = max(1, int(max_points)) if max_points else None
        self._points: List[P] = []
        self._times: List[int] = []
        self.stale_count = 0
        self.evicted_count = 0

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[P]:
        return iter(self._points)

    def __getitem__(self, index: int) -> P:
        return self._points[index]

    @property
    def last(self) -> Optional[P]:
        return self._points[-1] if self._points else None

    @property
    def first_time(self) -> Optional[int]:
        return self._times[0] if self._times else None

    @property
    def last_time(self) -> Optional[int]:
        return self._times[-1] if self._times else None

    @property
    def times(self) -> List[int]:
        return list(self._times)

    def points(self) -> List[P]:
        return list(self._points)

    def clear(self) -> None:
        self._points.clear()
        self._times.clear()

    def predecessor(self, time: int) -> Optional[P]:
        """Return the point with the greatest ``time`` not after ``time``."""

        idx = bisect_right(self._times, int(time))
        if idx == 0:
            return None
        return self._points[idx - 1]

    def pop_through(self, time: int) -> List[P]:
        """Remove and return every point with ``time`` at or before ``time``."""

        idx = bisect_right(self._times, int(time))
        taken = self._points[:idx]
        del self._points[:idx]
        del self._times[:idx]
        return taken

    def _append(self, point: P) -> None:
        self._points.append(point)
        self._times.append(int(point.time))
        if self._max_points is not None and len(self._points) > self._max_points:
            overflow = len(self._points) - self._max_points
            del self._points[:overflow]
            del self._times[:overflow]
            self.evicted_count += overflow

    def _replace_last(self, point: P) -> None:
        self._points[-1] = point


def reconcile(series: Series[P], point: P) -> ReconcileOutcome:
    """Apply one point to ``series`` in place and report what happened."""

    last = series.last
    if last is None or point.time > last.time:
        series._append(point)
        return ReconcileOutcome.APPENDED
    if point.time == last.time:
        series._replace_last(last.merge(point))
        return ReconcileOutcome.MERGED
    series.stale_count += 1
    LOGGER.debug(
        "Stale point for %s: time %s behind last %s", series.name, point.time, last.time
    )
    return ReconcileOutcome.STALE


def reset_and_load(series: Series[P], points: Iterable[P]) -> int:
    """Clear ``series`` and reconcile ``points`` in submitted order.

    Returns the number of points rejected as stale during the load.
    """

    series.clear()
    rejected = 0
    for point in points:
        if reconcile(series, point) is ReconcileOutcome.STALE:
            rejected += 1
    return rejected
