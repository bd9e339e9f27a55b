"""Backtesting package."""

from .engine import BacktestEngine, BacktestResult, simulate_backtest
from .sweep import fan_out, sweep_backtests, sweep_metrics

__all__ = [
    "BacktestEngine",
    "BacktestResult",
    "fan_out",
    "simulate_backtest",
    "sweep_backtests",
    "sweep_metrics",
]
