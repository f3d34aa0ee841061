"""Chart data points exchanged between the feed, the store and the view."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Mapping, Optional


class SignalKind(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class Topic(str, Enum):
    """Semantic type of a push topic."""

    PRICE = "price"
    INDICATORS = "indicators"
    SIGNALS = "signals"


@dataclass(frozen=True, slots=True)
class Bar:
    """OHLC price for one sampling interval; ``time`` is epoch seconds."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None

    def merge(self, newer: "Bar") -> "Bar":
        if newer.volume is None and self.volume is not None:
            return replace(newer, volume=self.volume)
        return newer

    def as_dict(self) -> Dict[str, float | int | None]:
        data: Dict[str, float | int | None] = {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
        }
        if self.volume is not None:
            data["volume"] = self.volume
        return data


@dataclass(frozen=True, slots=True)
class IndicatorPoint:
    """Indicator values at one time; may hold only some of the channels."""

    time: int
    fields: Mapping[str, float] = field(default_factory=dict)

    def merge(self, newer: "IndicatorPoint") -> "IndicatorPoint":
        merged = dict(self.fields)
        merged.update(newer.fields)
        return IndicatorPoint(time=newer.time, fields=merged)

    def only(self, name: str) -> Optional["IndicatorPoint"]:
        if name not in self.fields:
            return None
        return IndicatorPoint(time=self.time, fields={name: self.fields[name]})

    def as_dict(self) -> Dict[str, float | int]:
        return {"time": self.time, **self.fields}


@dataclass(frozen=True, slots=True)
class Signal:
    time: int
    instrument: str
    kind: SignalKind
    strategy_name: str = ""
    description: str = ""

    def as_dict(self) -> Dict[str, object]:
        return {
            "time": self.time,
            "instrument": self.instrument,
            "kind": self.kind.value,
            "strategyName": self.strategy_name,
            "description": self.description,
        }


@dataclass(frozen=True, slots=True)
class AnchoredMarker:
    """A signal pinned to the bar at or before its time."""

    signal: Signal
    anchor_time: int

    @property
    def position(self) -> str:
        return "belowBar" if self.signal.kind is SignalKind.BUY else "aboveBar"

    @property
    def shape(self) -> str:
        return "arrowUp" if self.signal.kind is SignalKind.BUY else "arrowDown"

    @property
    def color(self) -> str:
        return "green" if self.signal.kind is SignalKind.BUY else "red"

    @property
    def text(self) -> str:
        return self.signal.kind.value

    def as_dict(self) -> Dict[str, object]:
        return {
            "time": self.anchor_time,
            "signalTime": self.signal.time,
            "position": self.position,
            "shape": self.shape,
            "color": self.color,
            "text": self.text,
            "strategyName": self.signal.strategy_name,
        }
