from __future__ import annotations

import json

import pandas as pd
import pytest

from quant_core.backtest import BacktestEngine, simulate_backtest
from quant_core.config import CoreConfig, CostModelConfig
from quant_core.errors import InvalidInputError
from quant_core.execution import CostModel
from quant_core.risk import StopConfig
from quant_core.types import TradeReason


def _prices(closes: dict[str, list[float]], start: str = "2024-01-02") -> pd.DataFrame:
    n = len(next(iter(closes.values())))
    times = pd.date_range(start, periods=n, freq="D", tz="UTC")
    rows = [
        {"event_time": t, "symbol": sym, "close": px}
        for sym, series in closes.items()
        for t, px in zip(times, series)
        if px is not None
    ]
    return pd.DataFrame(rows)


def _day(i: int) -> pd.Timestamp:
    return pd.Timestamp("2024-01-02", tz="UTC") + pd.Timedelta(days=i)


def test_buy_and_hold_equity_follows_price_path() -> None:
    result = simulate_backtest({"2024-01-02": {"A": 1.0}}, _prices({"A": [100.0, 110.0, 88.0]}), 10_000.0)

    assert result.equity_curve["equity_units"].tolist() == [1_000_000, 1_100_000, 880_000]
    assert result.equity_curve["equity_units"].iloc[-1] / result.equity_curve["equity_units"].iloc[0] == 0.88
    assert result.equity_curve["period_return"].tolist() == pytest.approx([0.0, 0.1, -0.2])
    assert result.metrics.total_return == pytest.approx(-0.12)
    assert len(result.trades) == 1
    trade = result.trades[0]
    assert (trade.symbol, trade.quantity, trade.price, trade.fee) == ("A", 100, 10_000, 0)
    assert result.final_positions["A"].quantity == 100
    assert result.final_cash == 0
    assert result.current_weights() == {"A": 1.0}
    holdings = result.holdings_frame()
    assert len(holdings) == 3
    assert (holdings["symbol"] == "A").all()
    assert holdings["weight"].tolist() == [1.0, 1.0, 1.0]


def test_identical_inputs_give_identical_results() -> None:
    prices = _prices({"A": [100.0, 101.5, 99.25, 103.0], "B": [50.0, 49.0, 51.0, 52.5]})
    schedule = {"2024-01-02": {"A": 0.6, "B": 0.4}, "2024-01-04": {"A": 0.3, "B": 0.6}}
    kwargs = dict(cost_model=CostModel(commission_bps=5, min_trade_fee=100), stop_configs=StopConfig.fixed(0.02))

    first = simulate_backtest(schedule, prices, 25_000.0, **kwargs)
    second = simulate_backtest(schedule, prices, 25_000.0, **kwargs)
    assert json.dumps(first.to_dict(), sort_keys=True) == json.dumps(second.to_dict(), sort_keys=True)


def test_fixed_stop_exits_on_first_breach() -> None:
    prices = _prices({"A": [100.0, 97.0, 94.0, 99.0]})
    schedule = {"2024-01-02": {"A": 1.0}}

    result = simulate_backtest(schedule, prices, 10_000.0, stop_configs=StopConfig.fixed(0.05))
    (event,) = result.stop_events
    assert event.timestamp == _day(2)
    assert event.threshold == 9_500
    assert event.exit_price == 9_400
    assert event.quantity == 100
    assert result.trades[-1].reason is TradeReason.STOP
    assert result.final_positions == {}
    assert result.final_cash == 940_000

    at_threshold = simulate_backtest(
        schedule, prices, 10_000.0, stop_configs=StopConfig.fixed(0.05), gap_policy="threshold"
    )
    assert at_threshold.stop_events[0].exit_price == 9_500
    assert at_threshold.final_cash == 950_000


def test_stopped_symbol_is_not_reentered_in_same_period() -> None:
    prices = _prices({"A": [100.0, 94.0, 99.0]})
    schedule = {"2024-01-02": {"A": 1.0}, "2024-01-03": {"A": 1.0}, "2024-01-04": {"A": 1.0}}
    result = simulate_backtest(schedule, prices, 10_000.0, stop_configs=StopConfig.fixed(0.05))

    day_one = [t for t in result.trades if t.timestamp == _day(1)]
    assert [t.reason for t in day_one] == [TradeReason.STOP]
    day_two = [t for t in result.trades if t.timestamp == _day(2)]
    assert len(day_two) == 1 and day_two[0].quantity > 0


def test_trailing_stop_ratchets_then_triggers() -> None:
    prices = _prices({"A": [100.0, 110.0, 108.0, 104.0]})
    result = simulate_backtest(
        {"2024-01-02": {"A": 1.0}}, prices, 10_000.0, stop_configs=StopConfig.trailing(offset=5.0)
    )
    (event,) = result.stop_events
    assert event.timestamp == _day(3)
    assert event.threshold == 10_500
    assert event.kind == "trailing"


def test_simultaneous_stops_follow_symbol_order_or_priority() -> None:
    prices = _prices({"A": [100.0, 90.0], "B": [100.0, 90.0]})
    schedule = {"2024-01-02": {"A": 0.5, "B": 0.5}}
    stop = StopConfig.fixed(0.05)

    default = simulate_backtest(schedule, prices, 10_000.0, stop_configs=stop)
    assert [e.symbol for e in default.stop_events] == ["A", "B"]

    prioritized = simulate_backtest(schedule, prices, 10_000.0, stop_configs=stop, stop_priority=("B",))
    assert [e.symbol for e in prioritized.stop_events] == ["B", "A"]


def test_costs_cap_buys_to_available_cash() -> None:
    result = simulate_backtest(
        {"2024-01-02": {"A": 1.0}}, _prices({"A": [100.0]}), 10_000.0, cost_model=CostModel(commission_bps=10)
    )
    (trade,) = result.trades
    assert trade.quantity == 99
    assert trade.fee == 990
    assert result.final_cash == 9_010
    assert result.final_cash >= 0


def test_min_fee_applies_to_each_trade() -> None:
    result = simulate_backtest(
        {"2024-01-02": {"A": 0.5}},
        _prices({"A": [100.0]}),
        10_000.0,
        cost_model=CostModelConfig(min_trade_fee=5.0),
    )
    (trade,) = result.trades
    assert trade.quantity == 50
    assert trade.fee == 500
    assert result.final_cash == 499_500


def test_rebalance_sells_before_buying_and_tracks_pnl() -> None:
    prices = _prices({"A": [100.0, 120.0], "B": [50.0, 50.0]})
    schedule = {"2024-01-02": {"A": 1.0}, "2024-01-03": {"B": 1.0}}
    result = simulate_backtest(schedule, prices, 10_000.0)

    day_two = [t for t in result.trades if t.timestamp == _day(1)]
    assert [(t.symbol, t.quantity) for t in day_two] == [("A", -100), ("B", 240)]
    assert "A" not in result.final_positions
    assert result.final_positions["B"].quantity == 240
    assert result.equity_curve["equity_units"].iloc[-1] == 1_200_000


def test_missing_price_keeps_last_close() -> None:
    prices = _prices({"A": [100.0, 105.0, 110.0], "B": [50.0, None, 55.0]})
    result = simulate_backtest({"2024-01-02": {"A": 0.5, "B": 0.5}}, prices, 10_000.0)
    holdings = result.holdings_frame()
    b_mid = holdings[(holdings["symbol"] == "B") & (holdings["event_time"] == _day(1))]
    assert b_mid["price"].iloc[0] == pytest.approx(50.0)


def test_mapping_price_input_and_engine_from_config() -> None:
    times = pd.date_range("2024-01-02", periods=3, freq="D", tz="UTC")
    prices = {"A": pd.Series([100.0, 110.0, 121.0], index=times)}
    engine = BacktestEngine.from_config(CoreConfig())
    result = engine.run({times[0]: {"A": 1.0}}, prices, initial_cash=1_000.0)
    assert result.equity_curve["equity_units"].tolist() == [100_000, 110_000, 121_000]
    assert result.metadata["n_periods"] == 3


@pytest.mark.parametrize(
    "schedule",
    [
        {"2024-01-02": {"A": -0.1}},
        {"2024-01-02": {"A": 0.7, "B": 0.4}},
        {"2024-01-02": {"A": float("nan")}},
        {"2023-12-29": {"A": 1.0}},
    ],
)
def test_invalid_weight_schedules_raise(schedule) -> None:
    with pytest.raises(InvalidInputError):
        simulate_backtest(schedule, _prices({"A": [100.0, 101.0], "B": [10.0, 10.0]}), 1_000.0)


def test_invalid_prices_and_options_raise() -> None:
    schedule = {"2024-01-02": {"A": 1.0}}
    with pytest.raises(InvalidInputError):
        simulate_backtest(schedule, _prices({"A": [100.0, float("nan")]}), 1_000.0)
    with pytest.raises(InvalidInputError):
        simulate_backtest(schedule, pd.DataFrame(columns=["event_time", "symbol", "close"]), 1_000.0)
    with pytest.raises(InvalidInputError):
        simulate_backtest(schedule, _prices({"A": [100.0]}), 1_000.0, gap_policy="midpoint")
    with pytest.raises(InvalidInputError):
        simulate_backtest(schedule, _prices({"A": [100.0]}), -1.0)


def test_duplicate_weight_rows_raise() -> None:
    frame = pd.DataFrame(
        {
            "event_time": ["2024-01-02", "2024-01-02"],
            "symbol": ["A", "A"],
            "weight": [0.2, 0.9],
        }
    )
    with pytest.raises(InvalidInputError):
        simulate_backtest(frame, _prices({"A": [100.0, 101.0]}), 10_000.0)


def test_weight_frame_input_matches_mapping_input() -> None:
    frame = pd.DataFrame({"event_time": ["2024-01-02", "2024-01-02"], "symbol": ["A", "B"], "weight": [0.5, 0.5]})
    prices = _prices({"A": [100.0, 110.0], "B": [50.0, 45.0]})
    from_frame = simulate_backtest(frame, prices, 10_000.0)
    from_mapping = simulate_backtest({"2024-01-02": {"A": 0.5, "B": 0.5}}, prices, 10_000.0)
    pd.testing.assert_frame_equal(from_frame.equity_curve, from_mapping.equity_curve)
    assert from_frame.trades == from_mapping.trades


@pytest.mark.parametrize(
    "bar",
    [
        {"open": 95.0, "high": 101.0, "low": 99.0, "close": 90.0},
        {"open": 95.0, "high": 94.0, "low": 89.0, "close": 90.0},
        {"open": 120.0, "high": 110.0, "low": 89.0, "close": 90.0},
        {"open": 95.0, "high": float("inf"), "low": 89.0, "close": 90.0},
    ],
)
def test_inconsistent_bars_raise(bar) -> None:
    prices = pd.DataFrame(
        [
            {"event_time": _day(0), "symbol": "A", "open": 100.0, "high": 100.0, "low": 100.0, "close": 100.0},
            {"event_time": _day(1), "symbol": "A", **bar},
        ]
    )
    with pytest.raises(InvalidInputError):
        simulate_backtest({"2024-01-02": {"A": 1.0}}, prices, 10_000.0, stop_configs=StopConfig.fixed(0.05))


def test_missing_low_falls_back_to_close_for_stops() -> None:
    prices = pd.DataFrame(
        [
            {"event_time": _day(0), "symbol": "A", "open": 100.0, "high": 100.0, "low": 100.0, "close": 100.0},
            {"event_time": _day(1), "symbol": "A", "open": 96.0, "high": 97.0, "low": None, "close": 90.0},
        ]
    )
    result = simulate_backtest({"2024-01-02": {"A": 1.0}}, prices, 10_000.0, stop_configs=StopConfig.fixed(0.05))
    (event,) = result.stop_events
    assert event.timestamp == _day(1)
    assert event.exit_price == 9_500


def test_zero_close_does_not_leak_infinite_returns() -> None:
    prices = _prices({"A": [10.0, 0.0, 5.0], "B": [20.0, 20.0, 20.0]})
    result = simulate_backtest({"2024-01-02": {"B": 1.0}}, prices, 1_000.0)
    assert result.symbol_returns["A"].tolist() == [0.0, -1.0, 0.0]
    json.dumps(result.to_dict(), allow_nan=False)
