"""Per-instrument chart state: bars, indicator channels and signals."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from ..utils.logging import get_logger
from .models import AnchoredMarker, Bar, IndicatorPoint, Signal
from .overlay import MarkerBook
from .reconcile import ReconcileOutcome, Series, reconcile, reset_and_load

LOGGER = get_logger(__name__)

BAR_COLUMNS = ["open", "high", "low", "close", "volume"]


@dataclass(frozen=True)
class SeriesView:
    """Consistent point-in-time copy of a :class:`SeriesStore`."""

    instrument: str
    generation: int
    bars: Tuple[Bar, ...] = ()
    indicator_channels: Mapping[str, Tuple[IndicatorPoint, ...]] = field(default_factory=dict)
    signals: Tuple[Signal, ...] = ()
    markers: Tuple[AnchoredMarker, ...] = ()
    status: str = "Disconnected"
    snapshot_loaded: bool = False
    snapshot_error: Optional[str] = None
    transport_error: Optional[str] = None
    diagnostics: Mapping[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "instrument": self.instrument,
            "generation": self.generation,
            "status": self.status,
            "snapshotLoaded": self.snapshot_loaded,
            "snapshotError": self.snapshot_error,
            "transportError": self.transport_error,
            "bars": [bar.as_dict() for bar in self.bars],
            "indicatorChannels": {
                name: [{"time": p.time, "value": p.fields[name]} for p in points]
                for name, points in self.indicator_channels.items()
            },
            "signals": [signal.as_dict() for signal in self.signals],
            "markers": [marker.as_dict() for marker in self.markers],
            "diagnostics": dict(self.diagnostics),
        }

    def to_frame(self) -> pd.DataFrame:
        """Align bars, indicator channels and markers on one time index."""

        frame = pd.DataFrame(
            [bar.as_dict() for bar in self.bars], columns=["time", *BAR_COLUMNS]
        ).set_index("time")
        for name, points in self.indicator_channels.items():
            column = pd.Series(
                {p.time: p.fields[name] for p in points}, name=name, dtype="float64"
            )
            frame = frame.join(column, how="outer")
        if self.markers:
            labels: Dict[int, List[str]] = {}
            for marker in self.markers:
                labels.setdefault(marker.anchor_time, []).append(marker.text)
            frame = frame.join(
                pd.Series({t: ",".join(v) for t, v in labels.items()}, name="signals", dtype="object"),
                how="left",
            )
        frame.index.name = "time"
        return frame.sort_index()


class SeriesStore:
    """Canonical ordered series for one instrument.

    The store is replaced wholesale when the instrument changes, so every
    series inside belongs to ``instrument``.
    """

    def __init__(
        self,
        instrument: str,
        generation: int,
        *,
        max_points: Optional[int] = None,
    ) -> None:
        self.instrument = instrument
        self.generation = generation
        self._max_points = max_points
        self.bars: Series[Bar] = Series(f"{instrument}:bars", max_points=max_points)
        self.channels: Dict[str, Series[IndicatorPoint]] = {}
        self._pending: Dict[str, Series[IndicatorPoint]] = {}
        self.signals: List[Signal] = []
        self.marker_book = MarkerBook()
        self.snapshot_loaded = False
        self.malformed_count = 0
        self.fenced_count = 0
        self.pruned_signals = 0
        self._evictions_seen = 0

    # ------------------------------------------------------------- writes
    def load_snapshot(self, bars: Iterable[Bar]) -> int:
        rejected = reset_and_load(self.bars, bars)
        if rejected:
            LOGGER.warning("Snapshot for %s had %s out-of-order bars", self.instrument, rejected)
        self.snapshot_loaded = True
        self._after_bar()
        return rejected

    def apply_bar(self, bar: Bar) -> ReconcileOutcome:
        outcome = reconcile(self.bars, bar)
        if outcome is not ReconcileOutcome.STALE:
            self._after_bar()
        return outcome

    def apply_indicator(self, point: IndicatorPoint) -> List[ReconcileOutcome]:
        last_bar = self.bars.last_time
        outcomes: List[ReconcileOutcome] = []
        for name in point.fields:
            single = point.only(name)
            if last_bar is None or point.time > last_bar:
                target = self._series_for(self._pending, name, "pending")
            else:
                target = self._series_for(self.channels, name, "channel")
            outcomes.append(reconcile(target, single))
        return outcomes

    def apply_signal(self, signal: Signal) -> Optional[AnchoredMarker]:
        self.signals.append(signal)
        return self.marker_book.add(signal, self.bars)

    def _series_for(
        self, table: Dict[str, Series[IndicatorPoint]], name: str, kind: str
    ) -> Series[IndicatorPoint]:
        series = table.get(name)
        if series is None:
            series = Series(f"{self.instrument}:{kind}:{name}", max_points=self._max_points)
            table[name] = series
        return series

    def _after_bar(self) -> None:
        last_bar = self.bars.last_time
        if last_bar is None:
            return
        if self.bars.evicted_count != self._evictions_seen:
            self._evictions_seen = self.bars.evicted_count
            self._prune_before(self.bars.first_time)
        for name, pending in self._pending.items():
            ready = pending.pop_through(last_bar)
            if not ready:
                continue
            channel = self._series_for(self.channels, name, "channel")
            for point in ready:
                reconcile(channel, point)
        self.marker_book.release(self.bars)

    def _prune_before(self, first_bar: int) -> None:
        kept = [s for s in self.signals if s.time >= first_bar]
        dropped = len(self.signals) - len(kept)
        self.signals = kept
        dropped_markers = self.marker_book.prune(first_bar)
        self.pruned_signals += dropped
        for channel in self.channels.values():
            channel.evicted_count += len(channel.pop_through(first_bar - 1))
        if dropped or dropped_markers:
            LOGGER.debug(
                "Pruned %s signals and %s markers before %s for %s",
                dropped,
                dropped_markers,
                first_bar,
                self.instrument,
            )

    # -------------------------------------------------------------- reads
    @property
    def pending_indicator_count(self) -> int:
        return sum(len(series) for series in self._pending.values())

    def diagnostics(self) -> Dict[str, int]:
        stale = self.bars.stale_count + sum(s.stale_count for s in self.channels.values())
        stale += sum(s.stale_count for s in self._pending.values())
        evicted = self.bars.evicted_count + sum(s.evicted_count for s in self.channels.values())
        evicted += sum(s.evicted_count for s in self._pending.values())
        return {
            "stale": stale,
            "malformed": self.malformed_count,
            "fenced": self.fenced_count,
            "evicted": evicted,
            "evictedSignals": self.pruned_signals,
            "pendingIndicators": self.pending_indicator_count,
            "pendingSignals": len(self.marker_book.pending),
        }

    def view(
        self,
        *,
        status: str = "Disconnected",
        snapshot_error: Optional[str] = None,
        transport_error: Optional[str] = None,
    ) -> SeriesView:
        return SeriesView(
            instrument=self.instrument,
            generation=self.generation,
            bars=tuple(self.bars),
            indicator_channels={name: tuple(series) for name, series in self.channels.items()},
            signals=tuple(self.signals),
            markers=tuple(self.marker_book.markers),
            status=status,
            snapshot_loaded=self.snapshot_loaded,
            snapshot_error=snapshot_error,
            transport_error=transport_error,
            diagnostics=self.diagnostics(),
        )
