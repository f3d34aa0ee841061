from __future__ import annotations

from fakes import make_bar

from livechart.live.models import Bar, IndicatorPoint
from livechart.live.reconcile import ReconcileOutcome, Series, reconcile, reset_and_load


def test_increasing_points_are_kept_in_order() -> None:
    series: Series[Bar] = Series("bars")
    bars = [make_bar(t, close=float(t)) for t in (5, 60, 61, 3_600)]
    outcomes = [reconcile(series, bar) for bar in bars]

    assert outcomes == [ReconcileOutcome.APPENDED] * 4
    assert series.points() == bars
    assert series.times == [5, 60, 61, 3_600]


def test_same_time_merges_fields_and_keeps_length() -> None:
    series: Series[IndicatorPoint] = Series("indicators")
    reconcile(series, IndicatorPoint(time=100, fields={"sma": 1.0}))
    reconcile(series, IndicatorPoint(time=200, fields={"sma": 2.0, "rsi": 40.0}))

    outcome = reconcile(series, IndicatorPoint(time=200, fields={"rsi": 55.0, "macd": 0.3}))

    assert outcome is ReconcileOutcome.MERGED
    assert len(series) == 2
    assert dict(series.last.fields) == {"sma": 2.0, "rsi": 55.0, "macd": 0.3}


def test_bar_update_keeps_volume_when_new_push_omits_it() -> None:
    series: Series[Bar] = Series("bars")
    reconcile(series, make_bar(300, close=10.0, volume=1_000.0))
    reconcile(series, make_bar(300, close=12.5))

    assert series.last.close == 12.5
    assert series.last.volume == 1_000.0


def test_older_point_is_rejected_and_counted() -> None:
    series: Series[Bar] = Series("bars")
    for t in (100, 200, 300):
        reconcile(series, make_bar(t))
    before = series.points()

    outcome = reconcile(series, make_bar(250, close=99.0))

    assert outcome is ReconcileOutcome.STALE
    assert series.points() == before
    assert series.stale_count == 1


def test_reconciling_twice_equals_once() -> None:
    once: Series[IndicatorPoint] = Series("once")
    twice: Series[IndicatorPoint] = Series("twice")
    base = IndicatorPoint(time=10, fields={"sma": 1.0})
    update = IndicatorPoint(time=10, fields={"rsi": 30.0})
    for series in (once, twice):
        reconcile(series, base)
        reconcile(series, update)
    reconcile(twice, update)

    assert once.points() == twice.points()


def test_reset_and_load_applies_same_rules_as_live() -> None:
    series: Series[Bar] = Series("bars")
    reconcile(series, make_bar(9_999))

    rejected = reset_and_load(
        series,
        [make_bar(100), make_bar(200, close=1.0), make_bar(200, close=2.0), make_bar(150), make_bar(300)],
    )

    assert rejected == 1
    assert series.times == [100, 200, 300]
    assert series[1].close == 2.0


def test_max_points_evicts_oldest() -> None:
    series: Series[Bar] = Series("bars", max_points=3)
    for t in range(1, 6):
        reconcile(series, make_bar(t))

    assert series.times == [3, 4, 5]
    assert series.evicted_count == 2


def test_predecessor_and_pop_through() -> None:
    series: Series[Bar] = Series("bars")
    for t in (100, 200, 300):
        reconcile(series, make_bar(t))

    assert series.predecessor(250).time == 200
    assert series.predecessor(300).time == 300
    assert series.predecessor(99) is None

    taken = series.pop_through(200)
    assert [bar.time for bar in taken] == [100, 200]
    assert series.times == [300]
