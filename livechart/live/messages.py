"""Parse backend payloads into bars, indicator points and signals."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..exceptions import MalformedMessage
from ..utils.logging import get_logger
from ..utils.time import timestamp_to_seconds
from .models import Bar, IndicatorPoint, Signal, SignalKind, Topic

LOGGER = get_logger(__name__)

DEFAULT_INDICATOR_CHANNELS = ("sma", "rsi", "macd", "macdSignal", "macdHist")
_TIME_KEYS = {"time", "timestamp", "symbol", "instrument"}

ParsedItem = Union[Bar, IndicatorPoint, Signal]


class _Timed(BaseModel):
    model_config = ConfigDict(extra="allow")

    time: Optional[int] = None
    timestamp: Any = None

    def epoch_seconds(self) -> int:
        if self.time is not None:
            seconds = int(self.time)
        elif self.timestamp is not None:
            seconds = timestamp_to_seconds(self.timestamp)
        else:
            raise ValueError("missing time/timestamp")
        if seconds < 0:
            raise ValueError(f"negative time {seconds}")
        return seconds


class StockDataPayload(_Timed):
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None

    @field_validator("open", "high", "low", "close")
    @classmethod
    def finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("price must be finite")
        return v


class SignalPayload(_Timed):
    symbol: str = Field(..., min_length=1)
    signalType: SignalKind
    strategyName: str = ""
    description: str = ""

    @field_validator("signalType", mode="before")
    @classmethod
    def upper_kind(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


@dataclass(frozen=True, slots=True)
class ParsedMessage:
    topic: Topic
    items: List[ParsedItem]


def _decode_body(topic: Topic, body: Union[str, bytes, Mapping[str, Any]]) -> Mapping[str, Any]:
    if isinstance(body, Mapping):
        return body
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(topic.value, f"invalid JSON ({exc})") from exc
    if not isinstance(data, dict):
        raise MalformedMessage(topic.value, "expected a JSON object")
    return data


def _extra_numbers(extra: Optional[Dict[str, Any]], channels: Iterable[str]) -> Dict[str, float]:
    fields: Dict[str, float] = {}
    if not extra:
        return fields
    for name in channels:
        value = extra.get(name)
        if value is None or isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            fields[name] = number
    return fields


def parse_bar(
    payload: Mapping[str, Any], channels: Iterable[str] = DEFAULT_INDICATOR_CHANNELS
) -> List[ParsedItem]:
    """Return the bar and, when the record carries indicator values, its point."""

    try:
        model = StockDataPayload.model_validate(payload)
        seconds = model.epoch_seconds()
    except (ValidationError, ValueError) as exc:
        raise MalformedMessage(Topic.PRICE.value, str(exc)) from exc
    items: List[ParsedItem] = [
        Bar(
            time=seconds,
            open=model.open,
            high=model.high,
            low=model.low,
            close=model.close,
            volume=model.volume,
        )
    ]
    riding = _extra_numbers(model.model_extra, channels)
    if riding:
        items.append(IndicatorPoint(time=seconds, fields=riding))
    return items


def parse_indicator(payload: Mapping[str, Any]) -> IndicatorPoint:
    try:
        model = _Timed.model_validate(payload)
        seconds = model.epoch_seconds()
    except (ValidationError, ValueError) as exc:
        raise MalformedMessage(Topic.INDICATORS.value, str(exc)) from exc
    extra = model.model_extra or {}
    fields = _extra_numbers(extra, [key for key in extra if key not in _TIME_KEYS])
    if not fields:
        raise MalformedMessage(Topic.INDICATORS.value, "no numeric indicator fields")
    return IndicatorPoint(time=seconds, fields=fields)


def parse_signal(payload: Mapping[str, Any]) -> Signal:
    try:
        model = SignalPayload.model_validate(payload)
        seconds = model.epoch_seconds()
    except (ValidationError, ValueError) as exc:
        raise MalformedMessage(Topic.SIGNALS.value, str(exc)) from exc
    return Signal(
        time=seconds,
        instrument=model.symbol.upper(),
        kind=model.signalType,
        strategy_name=model.strategyName,
        description=model.description,
    )


def parse_message(
    topic: Topic,
    body: Union[str, bytes, Mapping[str, Any]],
    channels: Iterable[str] = DEFAULT_INDICATOR_CHANNELS,
) -> ParsedMessage:
    """Decode a push message body according to its topic type."""

    payload = _decode_body(topic, body)
    if topic is Topic.PRICE:
        return ParsedMessage(topic, parse_bar(payload, channels))
    if topic is Topic.INDICATORS:
        return ParsedMessage(topic, [parse_indicator(payload)])
    return ParsedMessage(topic, [parse_signal(payload)])


def parse_snapshot(instrument: str, rows: Any) -> List[Bar]:
    """Convert a historical snapshot response into bars, in submitted order.

    Rows that do not parse are skipped with a warning; a response that is
    not a list of objects is rejected as a whole.
    """

    if not isinstance(rows, list):
        raise MalformedMessage("snapshot", f"expected a list for {instrument}")
    bars: List[Bar] = []
    skipped = 0
    for row in rows:
        if not isinstance(row, Mapping):
            raise MalformedMessage("snapshot", f"expected objects for {instrument}")
        try:
            items = parse_bar(row, ())
        except MalformedMessage as exc:
            skipped += 1
            LOGGER.warning("Skipping snapshot row for %s: %s", instrument, exc.reason)
            continue
        bars.append(items[0])  # type: ignore[arg-type]
    if skipped:
        LOGGER.warning("Dropped %s malformed snapshot rows for %s", skipped, instrument)
    return bars
