from __future__ import annotations

import pytest

from quant_core.errors import InvalidInputError
from quant_core.risk import PriceBar, StopConfig, StopEvaluator, average_true_range
from quant_core.risk.stops import StopStatus, parse_gap_policy, stop_order, true_ranges


def _evaluator(config: StopConfig, gap_policy: str = "worse_price") -> StopEvaluator:
    return StopEvaluator(configs={"AAA": config}, gap_policy=gap_policy)


def test_fixed_stop_threshold_and_intrabar_breach() -> None:
    ev = _evaluator(StopConfig.fixed(0.05))
    state = ev.open("AAA", 10_000, [])
    assert state is not None and state.threshold == 9_500

    assert ev.evaluate({"AAA": PriceBar(close=9_600)}, {}) == []
    triggers = ev.evaluate({"AAA": PriceBar(close=9_700, open=9_800, high=9_900, low=9_400)}, {})
    assert len(triggers) == 1
    trigger = triggers[0]
    assert trigger.threshold == 9_500
    assert trigger.exit_price == 9_500
    assert not trigger.gapped
    assert state.status is StopStatus.TRIGGERED

    closed = ev.close("AAA")
    assert closed.status is StopStatus.CLOSED
    assert ev.states == {}


def test_gap_through_threshold_respects_policy() -> None:
    gap_bar = PriceBar(close=9_100, open=9_000, high=9_200, low=8_900)

    worse = _evaluator(StopConfig.fixed(0.05))
    worse.open("AAA", 10_000, [])
    (trigger,) = worse.evaluate({"AAA": gap_bar}, {})
    assert trigger.gapped
    assert trigger.exit_price == 9_000

    at_threshold = _evaluator(StopConfig.fixed(0.05), gap_policy="threshold")
    at_threshold.open("AAA", 10_000, [])
    (trigger,) = at_threshold.evaluate({"AAA": gap_bar}, {})
    assert trigger.gapped
    assert trigger.exit_price == 9_500


def test_close_only_breach_exits_at_close_under_worse_price() -> None:
    ev = _evaluator(StopConfig.fixed(0.05))
    ev.open("AAA", 10_000, [])
    (trigger,) = ev.evaluate({"AAA": PriceBar(close=9_400)}, {})
    assert trigger.exit_price == 9_400


def test_trailing_stop_only_tightens() -> None:
    ev = _evaluator(StopConfig.trailing(offset=5.0))
    state = ev.open("AAA", 10_000, [])
    assert state.threshold == 9_500

    seen = [state.threshold]
    for bar in [
        PriceBar(close=10_800, high=11_000, low=10_700),
        PriceBar(close=10_580, high=10_600, low=10_550),
        PriceBar(close=10_900, high=10_950, low=10_800),
    ]:
        assert ev.evaluate({"AAA": bar}, {}) == []
        seen.append(state.threshold)
    assert seen == [9_500, 10_500, 10_500, 10_500]
    assert seen == sorted(seen)

    (trigger,) = ev.evaluate({"AAA": PriceBar(close=10_450, open=10_600, high=10_650, low=10_400)}, {})
    assert trigger.threshold == 10_500
    assert trigger.exit_price == 10_500


def test_atr_stop_uses_true_range_at_entry() -> None:
    history = [
        PriceBar(close=10_000, high=10_100, low=9_900),
        PriceBar(close=10_000, high=10_200, low=9_800),
    ]
    assert true_ranges(history) == [200, 400]
    assert average_true_range(history, lookback=2) == 300
    assert average_true_range(history, lookback=1) == 400

    ev = _evaluator(StopConfig.atr(multiplier=2.0, lookback=2))
    state = ev.open("AAA", 10_000, history)
    assert state.threshold == 9_400


def test_atr_stop_waits_for_a_true_range() -> None:
    ev = _evaluator(StopConfig.atr(multiplier=1.0, lookback=5))
    first = PriceBar(close=10_000)
    state = ev.open("AAA", 10_000, [first])
    assert not state.armed

    second = PriceBar(close=9_000)
    assert ev.evaluate({"AAA": second}, {"AAA": [first, second]}) == []
    assert state.armed
    assert state.threshold == 9_000


def test_stop_order_uses_priority_then_symbol() -> None:
    assert stop_order(["MSFT", "AAPL", "XOM"]) == ["AAPL", "MSFT", "XOM"]
    assert stop_order(["MSFT", "AAPL", "XOM"], priority=("XOM",)) == ["XOM", "AAPL", "MSFT"]


def test_symbols_without_config_get_no_stop() -> None:
    ev = _evaluator(StopConfig.fixed(0.1))
    assert ev.open("BBB", 10_000, []) is None
    ev.release("BBB")
    assert ev.states == {}


@pytest.mark.parametrize(
    "factory",
    [
        lambda: StopConfig.fixed(0.0),
        lambda: StopConfig.fixed(1.0),
        lambda: StopConfig.atr(multiplier=0.0),
        lambda: StopConfig.trailing(),
        lambda: StopConfig.trailing(offset=1.0, multiplier=2.0),
        lambda: StopConfig.atr(multiplier=2.0, lookback=0),
        lambda: StopConfig(kind="bogus"),
    ],
)
def test_invalid_stop_configs_raise(factory) -> None:
    with pytest.raises(InvalidInputError):
        factory()


def test_unknown_gap_policy_raises() -> None:
    with pytest.raises(InvalidInputError):
        parse_gap_policy("midpoint")


def test_atr_stop_stays_pending_on_zero_true_range() -> None:
    flat = [PriceBar(close=10_000, high=10_000, low=10_000), PriceBar(close=10_000, high=10_000, low=10_000)]
    ev = _evaluator(StopConfig.atr(multiplier=2.0, lookback=5))
    state = ev.open("AAA", 10_000, flat)
    assert not state.armed

    still_flat = PriceBar(close=10_000, high=10_000, low=10_000)
    assert ev.evaluate({"AAA": still_flat}, {"AAA": [*flat, still_flat]}) == []
    assert not state.armed

    moved = PriceBar(close=10_100, high=10_200, low=10_000)
    assert ev.evaluate({"AAA": moved}, {"AAA": [*flat, still_flat, moved]}) == []
    assert state.armed
    assert state.threshold == 10_000 - 2 * 50
