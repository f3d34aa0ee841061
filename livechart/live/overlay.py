"""Anchor trading signal markers onto the price bars."""
from __future__ import annotations

from typing import List, Optional

from ..utils.logging import get_logger
from .models import AnchoredMarker, Bar, Signal
from .reconcile import Series

LOGGER = get_logger(__name__)


def attach(signal: Signal, bars: Series[Bar]) -> Optional[AnchoredMarker]:
    """Pin ``signal`` to the last bar at or before its time.

    Returns ``None`` when the signal predates every loaded bar. Bars are
    only read.
    """

    anchor = bars.predecessor(signal.time)
    if anchor is None:
        return None
    return AnchoredMarker(signal=signal, anchor_time=anchor.time)


class MarkerBook:
    """Anchored markers plus signals still waiting for a bar."""

    def __init__(self) -> None:
        self.markers: List[AnchoredMarker] = []
        self.pending: List[Signal] = []

    def add(self, signal: Signal, bars: Series[Bar]) -> Optional[AnchoredMarker]:
        marker = attach(signal, bars)
        if marker is None:
            LOGGER.debug("Buffering %s signal at %s until a bar anchors it", signal.kind.value, signal.time)
            self.pending.append(signal)
            return None
        self.markers.append(marker)
        return marker

    def prune(self, before: int) -> int:
        """Forget markers anchored, and signals waiting, before ``before``."""

        kept = [m for m in self.markers if m.anchor_time >= before]
        waiting = [s for s in self.pending if s.time >= before]
        dropped = len(self.markers) - len(kept) + len(self.pending) - len(waiting)
        self.markers = kept
        self.pending = waiting
        return dropped

    def release(self, bars: Series[Bar]) -> List[AnchoredMarker]:
        """Attach buffered signals that now have a qualifying bar."""

        if not self.pending:
            return []
        released: List[AnchoredMarker] = []
        still_pending: List[Signal] = []
        for signal in self.pending:
            marker = attach(signal, bars)
            if marker is None:
                still_pending.append(signal)
            else:
                released.append(marker)
        self.pending = still_pending
        self.markers.extend(released)
        return released
