"""Run an end-to-end demo: synthetic prices -> optimizer weights -> stop-aware backtest."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import numpy as np
import pandas as pd

from quant_core import CostModel, StopConfig, forecast_garch, optimize_risk_parity, simulate_backtest

LOOKBACK = 60
REBALANCE_EVERY = 5


def make_synthetic_market_data() -> pd.DataFrame:
    rng = np.random.default_rng(42)
    symbols = ["SPY", "AAPL", "MSFT", "JPM", "XOM", "JNJ"]
    times = pd.bdate_range("2024-01-02", "2025-12-31", tz="UTC")

    records: list[dict[str, object]] = []
    for sym in symbols:
        base_price = 400.0 if sym == "SPY" else float(rng.uniform(40, 350))
        vol_scale = 0.009 if sym == "SPY" else float(rng.uniform(0.010, 0.025))
        closes = base_price * np.exp(np.cumsum(rng.normal(0.0003, vol_scale, len(times))))
        opens = closes * (1.0 + rng.normal(0.0, vol_scale / 3.0, len(closes)))
        highs = np.maximum(opens, closes) * (1.0 + np.abs(rng.normal(0, vol_scale / 4.0, len(closes))))
        lows = np.minimum(opens, closes) * (1.0 - np.abs(rng.normal(0, vol_scale / 4.0, len(closes))))
        for i, t in enumerate(times):
            records.append(
                {
                    "symbol": sym,
                    "event_time": t,
                    "open": round(float(opens[i]), 2),
                    "high": round(float(highs[i]), 2),
                    "low": round(float(lows[i]), 2),
                    "close": round(float(closes[i]), 2),
                }
            )
    return pd.DataFrame(records)


def build_weight_schedule(market: pd.DataFrame) -> dict[pd.Timestamp, dict[str, float]]:
    closes = market.pivot(index="event_time", columns="symbol", values="close").sort_index()
    returns = closes.pct_change().dropna()
    schedule: dict[pd.Timestamp, dict[str, float]] = {}
    for i in range(LOOKBACK, len(returns), REBALANCE_EVERY):
        window = returns.iloc[i - LOOKBACK : i]
        result = optimize_risk_parity(window)
        schedule[returns.index[i]] = result.weights
    return schedule


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    market = make_synthetic_market_data()
    schedule = build_weight_schedule(market)

    result = simulate_backtest(
        schedule,
        market,
        initial_cash=1_000_000.0,
        cost_model=CostModel(commission_bps=2, slippage_bps=3, min_trade_fee=100),
        stop_configs=StopConfig.trailing(multiplier=3.0, lookback=14),
    )
    print("=== SUMMARY METRICS ===")
    for k, v in result.metrics.to_dict().items():
        print(f"{k:32s}: {v}")

    spy = market[market["symbol"] == "SPY"].sort_values("event_time")["close"].pct_change().dropna()
    vol = forecast_garch(spy.to_numpy(), mean_mode="constant", horizon=5)
    print(f"SPY next-day GARCH volatility: {vol.volatility:.4%} (converged={vol.converged})")

    out_dir = Path("outputs")
    out_dir.mkdir(exist_ok=True)
    result.equity_curve.to_csv(out_dir / "equity_curve.csv", index=False)
    result.trades_frame().to_csv(out_dir / "trades.csv", index=False)
    result.holdings_frame().to_csv(out_dir / "holdings.csv", index=False)
    result.stop_events_frame().to_csv(out_dir / "stop_events.csv", index=False)
    (out_dir / "result.json").write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    print("Saved artifacts in outputs/")


if __name__ == "__main__":
    main()
