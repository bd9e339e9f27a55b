"""Deterministic stop-aware portfolio backtest over a target-weight schedule."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
import logging
import math
from typing import Any, Mapping

import numpy as np
import pandas as pd

from quant_core.analytics.metrics import Metrics, compute_metrics
from quant_core.config import BacktestConfig, CoreConfig, CostModelConfig
from quant_core.errors import InvalidInputError
from quant_core.execution.costs import CostModel
from quant_core.fixed_point import Price, add_units, checked, scale_units, to_units, units_to_float
from quant_core.risk.stops import PriceBar, StopConfig, StopEvaluator, parse_gap_policy, resolve_stop_configs
from quant_core.time_utils import to_utc_index, to_utc_timestamp
from quant_core.types import Holding, Position, StopEvent, Trade, TradeReason

logger = logging.getLogger(__name__)

WEIGHT_SUM_TOLERANCE = 1e-9
PRICE_COLUMNS = ("open", "high", "low", "close")

WeightSchedule = Mapping[Any, Mapping[str, float]] | pd.DataFrame
PriceSchedule = pd.DataFrame | Mapping[str, pd.Series]


@dataclass(slots=True)
class BacktestResult:
    equity_curve: pd.DataFrame
    holdings: list[Holding]
    symbol_returns: pd.DataFrame
    trades: list[Trade]
    stop_events: list[StopEvent]
    metrics: Metrics
    final_positions: dict[str, Position]
    final_cash: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def holdings_frame(self) -> pd.DataFrame:
        columns = ["event_time", "symbol", "quantity", "price", "market_value", "weight"]
        frame = pd.DataFrame([h.to_dict() for h in self.holdings], columns=columns)
        frame["event_time"] = to_utc_index(frame["event_time"])
        return frame

    def trades_frame(self) -> pd.DataFrame:
        columns = ["symbol", "event_time", "quantity", "price", "fee", "notional", "reason"]
        frame = pd.DataFrame([t.to_dict() for t in self.trades], columns=columns)
        frame["event_time"] = to_utc_index(frame["event_time"])
        return frame

    def stop_events_frame(self) -> pd.DataFrame:
        columns = ["symbol", "event_time", "kind", "threshold", "exit_price", "quantity", "gapped"]
        frame = pd.DataFrame([e.to_dict() for e in self.stop_events], columns=columns)
        frame["event_time"] = to_utc_index(frame["event_time"])
        return frame

    def current_weights(self) -> dict[str, float]:
        """Weights of the final holdings snapshot."""
        if self.equity_curve.empty:
            return {}
        last = self.equity_curve["event_time"].iloc[-1]
        return {h.symbol: h.weight for h in self.holdings if h.timestamp == last}

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible payload; identical inputs give identical payloads."""
        curve = self.equity_curve.copy()
        curve["event_time"] = curve["event_time"].map(lambda ts: ts.isoformat())
        returns = self.symbol_returns.copy()
        returns.index = [ts.isoformat() for ts in returns.index]
        return {
            "equity_curve": curve.to_dict(orient="records"),
            "holdings": [h.to_dict() for h in self.holdings],
            "symbol_returns": returns.to_dict(orient="index"),
            "trades": [t.to_dict() for t in self.trades],
            "stop_events": [e.to_dict() for e in self.stop_events],
            "metrics": self.metrics.to_dict(),
            "final_positions": {
                sym: {
                    "quantity": pos.quantity,
                    "avg_entry_price": units_to_float(pos.avg_entry_price),
                    "realized_pnl": units_to_float(pos.realized_pnl),
                }
                for sym, pos in sorted(self.final_positions.items())
            },
            "final_cash": units_to_float(self.final_cash),
            "metadata": dict(self.metadata),
        }


def _optional_units(value: Any) -> int | None:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return Price.from_decimal(value).units


def _check_bar_ranges(frame: pd.DataFrame, closes: pd.Series) -> None:
    """Reject open/high/low values that are infinite or inconsistent with the bar; NaN means missing."""
    columns = {col: frame[col].astype(float) for col in ("open", "high", "low") if col in frame.columns}
    for col, values in columns.items():
        if np.isinf(values.to_numpy()).any():
            raise InvalidInputError(f"price_schedule {col} prices must be finite")
    body_low = np.fmin(columns["open"], closes) if "open" in columns else closes
    body_high = np.fmax(columns["open"], closes) if "open" in columns else closes
    if "low" in columns and (columns["low"] > body_low).any():
        raise InvalidInputError("price_schedule has rows with low above open/close")
    if "high" in columns and (columns["high"] < body_high).any():
        raise InvalidInputError("price_schedule has rows with high below open/close")


def prepare_price_schedule(price_schedule: PriceSchedule) -> pd.DataFrame:
    """
    Normalize prices to a long frame sorted by (event_time, symbol).

    Accepts the long market layout (event_time, symbol, close, optional open/high/low)
    or a mapping symbol -> close Series indexed by timestamp.
    """
    if isinstance(price_schedule, Mapping):
        parts = []
        for symbol, series in price_schedule.items():
            s = pd.Series(series)
            parts.append(pd.DataFrame({"event_time": s.index, "symbol": str(symbol), "close": s.to_numpy()}))
        frame = pd.concat(parts, ignore_index=True) if parts else pd.DataFrame(columns=["event_time", "symbol", "close"])
    elif isinstance(price_schedule, pd.DataFrame):
        frame = price_schedule.copy()
    else:
        raise InvalidInputError("price_schedule must be a DataFrame or a mapping of symbol -> Series")

    missing = {"event_time", "symbol", "close"} - set(frame.columns)
    if missing:
        raise InvalidInputError(f"price_schedule is missing required columns {sorted(missing)}")
    if frame.empty:
        raise InvalidInputError("price_schedule cannot be empty")

    frame["event_time"] = to_utc_index(frame["event_time"])
    frame["symbol"] = frame["symbol"].astype(str)
    if frame.duplicated(subset=["event_time", "symbol"]).any():
        raise InvalidInputError("price_schedule has duplicate (event_time, symbol) rows")
    closes = frame["close"].astype(float)
    if not np.all(np.isfinite(closes.to_numpy())):
        raise InvalidInputError("price_schedule close prices must be finite")
    _check_bar_ranges(frame, closes)
    keep = ["event_time", "symbol", *[c for c in PRICE_COLUMNS if c in frame.columns]]
    return frame[keep].sort_values(["event_time", "symbol"]).reset_index(drop=True)


def prepare_weight_schedule(weight_schedule: WeightSchedule) -> dict[pd.Timestamp, dict[str, float]]:
    """Normalize a weight schedule to {UTC timestamp: {symbol: weight}} and validate it."""
    if isinstance(weight_schedule, pd.DataFrame):
        missing = {"event_time", "symbol", "weight"} - set(weight_schedule.columns)
        if missing:
            raise InvalidInputError(f"weight_schedule is missing required columns {sorted(missing)}")
        frame = weight_schedule.copy()
        frame["event_time"] = to_utc_index(frame["event_time"])
        frame["symbol"] = frame["symbol"].astype(str)
        if frame.duplicated(subset=["event_time", "symbol"]).any():
            raise InvalidInputError("weight_schedule has duplicate (event_time, symbol) rows")
        raw: dict[Any, dict[str, float]] = defaultdict(dict)
        for row in frame.itertuples(index=False):
            raw[row.event_time][str(row.symbol)] = float(row.weight)
    else:
        raw = weight_schedule

    schedule: dict[pd.Timestamp, dict[str, float]] = {}
    for ts, targets in raw.items():
        key = to_utc_timestamp(ts)
        if key in schedule:
            raise InvalidInputError(f"weight_schedule has duplicate timestamp {key}")
        weights = {str(sym): float(w) for sym, w in targets.items()}
        for sym, w in weights.items():
            if not math.isfinite(w):
                raise InvalidInputError(f"non-finite weight for {sym} at {key}")
            if w < 0:
                raise InvalidInputError(f"negative weight for {sym} at {key}; short selling is not modeled")
        if sum(weights.values()) > 1.0 + WEIGHT_SUM_TOLERANCE:
            raise InvalidInputError(f"weights at {key} sum above 1.0")
        schedule[key] = weights
    return dict(sorted(schedule.items()))


def _bars_by_period(prices: pd.DataFrame) -> dict[pd.Timestamp, dict[str, PriceBar]]:
    out: dict[pd.Timestamp, dict[str, PriceBar]] = {}
    has = {col: col in prices.columns for col in PRICE_COLUMNS}
    for row in prices.itertuples(index=False):
        bar = PriceBar(
            close=Price.from_decimal(row.close).units,
            open=_optional_units(row.open) if has["open"] else None,
            high=_optional_units(row.high) if has["high"] else None,
            low=_optional_units(row.low) if has["low"] else None,
        )
        out.setdefault(row.event_time, {})[row.symbol] = bar
    return out


def _symbol_returns(prices: pd.DataFrame) -> pd.DataFrame:
    closes = prices.pivot(index="event_time", columns="symbol", values="close").astype(float)
    closes = closes.sort_index().ffill()
    returns = closes.pct_change(fill_method=None)
    # A move off a zero close has no defined return.
    returns = returns.replace([np.inf, -np.inf], np.nan).fillna(0.0)
    returns.index.name = "event_time"
    returns.columns.name = None
    return returns


def _affordable_quantity(quantity: int, price: int, cash: int, cost_model: CostModel) -> int:
    """Largest quantity <= ``quantity`` whose notional plus fee fits in ``cash``."""
    while quantity > 0:
        notional = quantity * price
        fee = cost_model.compute_cost(notional)
        if notional + fee <= cash:
            return quantity
        quantity = min(quantity - 1, max((cash - fee) // price, 0))
    return 0


class BacktestEngine:
    """
    Walk price periods in order. Per period: (1) evaluate stops and execute exits,
    (2) rebalance whole-share positions toward scheduled target weights at the close,
    (3) record holdings and equity. No wall-clock or randomness is used.
    """

    def __init__(
        self,
        cost_model: CostModel | CostModelConfig | None = None,
        config: BacktestConfig | None = None,
    ) -> None:
        if isinstance(cost_model, CostModelConfig):
            cost_model = CostModel.from_config(cost_model)
        self.cost_model = cost_model if cost_model is not None else CostModel.zero()
        self.config = config if config is not None else BacktestConfig()

    @classmethod
    def from_config(cls, config: CoreConfig) -> "BacktestEngine":
        return cls(cost_model=CostModel.from_config(config.costs), config=config.backtest)

    def _execute(
        self,
        symbol: str,
        timestamp: pd.Timestamp,
        quantity: int,
        price: int,
        reason: TradeReason,
        position: Position,
        cash: int,
    ) -> tuple[Trade, int]:
        fee = self.cost_model.compute_cost(quantity * price)
        cash = add_units(cash, -checked(quantity * price), -fee)
        position.apply_fill(quantity, price)
        trade = Trade(symbol=symbol, timestamp=timestamp, quantity=quantity, price=price, fee=fee, reason=reason)
        return trade, cash

    def run(
        self,
        weight_schedule: WeightSchedule,
        price_schedule: PriceSchedule,
        initial_cash: float | None = None,
        stop_configs: StopConfig | Mapping[str, StopConfig] | None = None,
    ) -> BacktestResult:
        prices = prepare_price_schedule(price_schedule)
        schedule = prepare_weight_schedule(weight_schedule)
        bars_by_period = _bars_by_period(prices)
        periods = sorted(bars_by_period)

        unmatched = [ts for ts in schedule if ts not in bars_by_period]
        if unmatched:
            raise InvalidInputError(f"weight_schedule timestamps without price periods: {unmatched[:5]}")

        cash = to_units(self.config.initial_cash if initial_cash is None else initial_cash)
        if cash < 0:
            raise InvalidInputError("initial_cash cannot be negative")
        initial_units = cash

        all_symbols = sorted(set(prices["symbol"]).union(*[set(w) for w in schedule.values()]))
        configs = resolve_stop_configs(stop_configs, all_symbols)
        evaluator = (
            StopEvaluator(
                configs=configs,
                gap_policy=parse_gap_policy(self.config.gap_policy),
                priority=tuple(self.config.stop_priority),
            )
            if configs
            else None
        )

        positions: dict[str, Position] = {}
        last_close: dict[str, int] = {}
        histories: dict[str, list[PriceBar]] = defaultdict(list)
        trades: list[Trade] = []
        stop_events: list[StopEvent] = []
        holdings: list[Holding] = []
        equity_records: list[dict[str, Any]] = []
        prev_equity = cash

        for t in periods:
            bars = bars_by_period[t]
            for symbol, bar in bars.items():
                histories[symbol].append(bar)
                last_close[symbol] = bar.close

            stopped: set[str] = set()
            if evaluator is not None:
                for trigger in evaluator.evaluate(bars, histories):
                    position = positions[trigger.symbol]
                    qty = position.quantity
                    trade, cash = self._execute(
                        trigger.symbol, t, -qty, trigger.exit_price, TradeReason.STOP, position, cash
                    )
                    trades.append(trade)
                    stop_events.append(
                        StopEvent(
                            symbol=trigger.symbol,
                            timestamp=t,
                            kind=str(trigger.kind),
                            threshold=trigger.threshold,
                            exit_price=trigger.exit_price,
                            quantity=qty,
                            gapped=trigger.gapped,
                        )
                    )
                    evaluator.close(trigger.symbol)
                    del positions[trigger.symbol]
                    stopped.add(trigger.symbol)
                    logger.info(
                        "Stop %s for %s at %s: exit %s (threshold %s)",
                        trigger.kind,
                        trigger.symbol,
                        t,
                        trigger.exit_price,
                        trigger.threshold,
                    )

            if t in schedule:
                cash = self._rebalance(
                    t, schedule[t], bars, last_close, positions, cash, stopped, evaluator, histories, trades
                )

            invested = 0
            period_holdings: list[tuple[str, int, int, int]] = []
            for symbol in sorted(positions):
                price = last_close[symbol]
                value = positions[symbol].market_value(price)
                invested = checked(invested + value)
                period_holdings.append((symbol, positions[symbol].quantity, price, value))
            equity = add_units(cash, invested)
            for symbol, qty, price, value in period_holdings:
                holdings.append(
                    Holding(
                        timestamp=t,
                        symbol=symbol,
                        quantity=qty,
                        price=price,
                        market_value=value,
                        weight=value / equity if equity > 0 else 0.0,
                    )
                )
            period_return = equity / prev_equity - 1.0 if prev_equity > 0 else 0.0
            equity_records.append(
                {
                    "event_time": t,
                    "equity": units_to_float(equity),
                    "cash": units_to_float(cash),
                    "invested": units_to_float(invested),
                    "period_return": period_return,
                    "equity_units": equity,
                }
            )
            prev_equity = equity

        equity_curve = pd.DataFrame(equity_records)
        metrics = compute_metrics(
            equity_curve["period_return"].to_numpy(),
            periods_per_year=self.config.periods_per_year,
            risk_free_rate=self.config.risk_free_rate,
        )
        return BacktestResult(
            equity_curve=equity_curve,
            holdings=holdings,
            symbol_returns=_symbol_returns(prices),
            trades=trades,
            stop_events=stop_events,
            metrics=metrics,
            final_positions={sym: positions[sym] for sym in sorted(positions)},
            final_cash=cash,
            metadata={
                "n_periods": len(periods),
                "n_trades": len(trades),
                "n_stop_events": len(stop_events),
                "n_rebalances": len(schedule),
                "initial_cash": units_to_float(initial_units),
                "stops_enabled": evaluator is not None,
                "gap_policy": str(self.config.gap_policy),
            },
        )

    def _rebalance(
        self,
        timestamp: pd.Timestamp,
        targets: Mapping[str, float],
        bars: Mapping[str, PriceBar],
        last_close: Mapping[str, int],
        positions: dict[str, Position],
        cash: int,
        stopped: set[str],
        evaluator: StopEvaluator | None,
        histories: Mapping[str, list[PriceBar]],
        trades: list[Trade],
    ) -> int:
        equity = cash
        for symbol, position in positions.items():
            equity = add_units(equity, position.market_value(last_close[symbol]))
        if equity <= 0:
            logger.warning("Skipping rebalance at %s: non-positive equity", timestamp)
            return cash

        deltas: dict[str, int] = {}
        for symbol in sorted(set(targets) | set(positions)):
            if symbol in stopped:
                continue
            bar = bars.get(symbol)
            if bar is None or bar.close == 0:
                logger.warning("No tradable price for %s at %s; holding unchanged", symbol, timestamp)
                continue
            target_value = scale_units(equity, targets.get(symbol, 0.0))
            target_qty = target_value // bar.close
            current_qty = positions[symbol].quantity if symbol in positions else 0
            if target_qty != current_qty:
                deltas[symbol] = target_qty - current_qty

        for symbol in sorted(s for s, d in deltas.items() if d < 0):
            position = positions[symbol]
            trade, cash = self._execute(
                symbol, timestamp, deltas[symbol], bars[symbol].close, TradeReason.REBALANCE, position, cash
            )
            trades.append(trade)
            if position.quantity == 0:
                del positions[symbol]
                if evaluator is not None:
                    evaluator.release(symbol)

        for symbol in sorted(s for s, d in deltas.items() if d > 0):
            price = bars[symbol].close
            qty = _affordable_quantity(deltas[symbol], price, cash, self.cost_model)
            if qty < deltas[symbol]:
                logger.debug("Buy of %s capped from %d to %d by cash", symbol, deltas[symbol], qty)
            if qty == 0:
                continue
            is_entry = symbol not in positions
            position = positions.setdefault(symbol, Position(symbol=symbol))
            trade, cash = self._execute(symbol, timestamp, qty, price, TradeReason.REBALANCE, position, cash)
            trades.append(trade)
            if is_entry and evaluator is not None:
                evaluator.open(symbol, price, histories.get(symbol, ()))
        return cash


def simulate_backtest(
    weight_schedule: WeightSchedule,
    price_schedule: PriceSchedule,
    initial_cash: float,
    cost_model: CostModel | CostModelConfig | None = None,
    stop_configs: StopConfig | Mapping[str, StopConfig] | None = None,
    *,
    periods_per_year: float = 252.0,
    risk_free_rate: float = 0.0,
    gap_policy: str = "worse_price",
    stop_priority: tuple[str, ...] = (),
) -> BacktestResult:
    """
    Simulate a target-weight schedule over a price schedule.

    initial_cash and prices are decimal dollars converted to integer cents at entry.
    Without ``stop_configs`` no stop checks run. ``stop_configs`` may be one
    StopConfig shared by every symbol or a per-symbol mapping.
    """
    config = BacktestConfig(
        initial_cash=initial_cash,
        periods_per_year=periods_per_year,
        risk_free_rate=risk_free_rate,
        gap_policy=str(parse_gap_policy(gap_policy)),
        stop_priority=tuple(stop_priority),
    )
    engine = BacktestEngine(cost_model=cost_model, config=config)
    return engine.run(weight_schedule, price_schedule, stop_configs=stop_configs)
