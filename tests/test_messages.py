from __future__ import annotations

import json

import pytest

from livechart.exceptions import MalformedMessage
from livechart.live.messages import parse_message, parse_snapshot
from livechart.live.models import Bar, IndicatorPoint, SignalKind, Topic


def test_stock_data_with_iso_timestamp() -> None:
    body = json.dumps(
        {"symbol": "IBM", "timestamp": "2024-01-02T14:30:00", "open": 160.1, "high": 161, "low": 159.5, "close": 160.7, "volume": 1200}
    )
    parsed = parse_message(Topic.PRICE, body)

    assert parsed.items == [Bar(time=1_704_205_800, open=160.1, high=161.0, low=159.5, close=160.7, volume=1200.0)]


def test_numeric_timestamp_is_milliseconds() -> None:
    parsed = parse_message(
        Topic.PRICE, {"timestamp": 1_704_205_800_000, "open": 1, "high": 2, "low": 0.5, "close": 1.5}
    )
    assert parsed.items[0].time == 1_704_205_800


def test_indicator_values_riding_on_price_record() -> None:
    parsed = parse_message(
        Topic.PRICE,
        {"time": 300, "open": 1, "high": 2, "low": 0.5, "close": 1.5, "sma": 1.2, "rsi": "55.5", "note": "x"},
    )

    bar, point = parsed.items
    assert isinstance(bar, Bar)
    assert point == IndicatorPoint(time=300, fields={"sma": 1.2, "rsi": 55.5})


def test_indicator_topic_keeps_partial_fields() -> None:
    parsed = parse_message(Topic.INDICATORS, '{"time": 120, "symbol": "IBM", "macd": 0.4, "macdSignal": 0.1}')
    assert parsed.items == [IndicatorPoint(time=120, fields={"macd": 0.4, "macdSignal": 0.1})]


def test_signal_type_is_case_insensitive() -> None:
    parsed = parse_message(
        Topic.SIGNALS,
        {
            "timestamp": "2024-01-02T14:30:00Z",
            "symbol": "ibm",
            "signalType": "sell",
            "strategyName": "SMA Crossover",
            "description": "Short SMA crossed below long SMA",
        },
    )
    signal = parsed.items[0]
    assert signal.kind is SignalKind.SELL
    assert signal.instrument == "IBM"
    assert signal.strategy_name == "SMA Crossover"


@pytest.mark.parametrize(
    "topic, body",
    [
        (Topic.PRICE, "not json"),
        (Topic.PRICE, "[1, 2]"),
        (Topic.PRICE, {"time": 1, "open": 1, "high": 1, "low": 1}),
        (Topic.PRICE, {"time": -5, "open": 1, "high": 1, "low": 1, "close": 1}),
        (Topic.PRICE, {"timestamp": "not-a-date", "open": 1, "high": 1, "low": 1, "close": 1}),
        (Topic.PRICE, '{"timestamp": 1e400, "open": 1, "high": 1, "low": 1, "close": 1}'),
        (Topic.INDICATORS, '{"timestamp": Infinity, "sma": 1.5}'),
        (Topic.SIGNALS, '{"timestamp": -Infinity, "symbol": "IBM", "signalType": "BUY"}'),
        (Topic.INDICATORS, {"time": 10, "symbol": "IBM"}),
        (Topic.SIGNALS, {"time": 10, "symbol": "IBM", "signalType": "HOLD"}),
    ],
)
def test_malformed_payloads_raise(topic: Topic, body) -> None:
    with pytest.raises(MalformedMessage):
        parse_message(topic, body)


def test_snapshot_skips_bad_rows_in_order() -> None:
    rows = [
        {"timestamp": 200_000, "open": 1, "high": 2, "low": 0, "close": 1},
        {"timestamp": 100_000, "open": 1, "high": 2, "low": 0},
        {"timestamp": 100_000, "open": 1, "high": 2, "low": 0, "close": 1},
    ]
    bars = parse_snapshot("IBM", rows)
    assert [bar.time for bar in bars] == [200, 100]


def test_snapshot_must_be_a_list() -> None:
    with pytest.raises(MalformedMessage):
        parse_snapshot("IBM", {"error": "not found"})


def test_snapshot_skips_rows_with_infinite_timestamp() -> None:
    rows = [
        {"timestamp": 100_000, "open": 1, "high": 2, "low": 0, "close": 1},
        {"timestamp": float("inf"), "open": 1, "high": 2, "low": 0, "close": 1},
        {"timestamp": 200_000, "open": 1, "high": 2, "low": 0, "close": 1},
    ]
    assert [bar.time for bar in parse_snapshot("IBM", rows)] == [100, 200]
