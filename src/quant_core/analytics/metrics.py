"""
Performance and risk metric calculations.

All statistics are computed from a periodic return sequence with one fixed set of
formulas. Degenerate inputs never produce NaN or infinity: every ratio whose
denominator is zero reports 0.0, and sequences with fewer than two returns report
zero volatility and zero drawdown.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
import math
from typing import Any, Sequence

import numpy as np
import pandas as pd

from quant_core.errors import InvalidInputError

DEFAULT_CVAR_ALPHA = 0.95


@dataclass(frozen=True, slots=True)
class Metrics:
    total_return: float
    cagr: float
    volatility: float
    sharpe: float
    sortino: float
    calmar: float
    max_drawdown: float
    cvar: float
    cvar_alpha: float
    win_rate: float
    profit_factor: float
    payoff_ratio: float
    kelly_fraction: float
    num_periods: int
    winning_periods: int
    losing_periods: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def __repr__(self) -> str:
        return (
            f"Metrics(total_return={self.total_return * 100:.2f}%, sharpe={self.sharpe:.2f}, "
            f"max_drawdown={self.max_drawdown * 100:.2f}%)"
        )


def as_return_array(returns: Sequence[float] | np.ndarray | pd.Series, name: str = "returns") -> np.ndarray:
    """Validate and convert a 1-D return sequence to a float array."""
    arr = np.asarray(returns, dtype=float)
    if arr.ndim != 1:
        raise InvalidInputError(f"{name} must be one-dimensional, got shape {arr.shape}")
    if arr.size == 0:
        raise InvalidInputError(f"{name} cannot be empty")
    if not np.all(np.isfinite(arr)):
        raise InvalidInputError(f"{name} contains non-finite values")
    return arr


def _safe_ratio(numerator: float, denominator: float) -> float:
    if denominator == 0 or not math.isfinite(denominator):
        return 0.0
    value = numerator / denominator
    return float(value) if math.isfinite(value) else 0.0


def _stdev(returns: np.ndarray) -> float:
    if returns.size < 2 or np.ptp(returns) == 0:
        return 0.0
    return float(np.std(returns, ddof=1))


def drawdown_series(returns: np.ndarray) -> np.ndarray:
    """Drawdown magnitude per period along the compounded path starting at 1.0."""
    wealth = np.concatenate(([1.0], np.cumprod(1.0 + returns)))
    peaks = np.maximum.accumulate(wealth)
    drawdown = np.where(peaks > 0, 1.0 - wealth / peaks, 0.0)
    return drawdown[1:]


def _max_drawdown(returns: np.ndarray) -> float:
    if returns.size < 2:
        return 0.0
    return float(drawdown_series(returns).max())


def _cagr(returns: np.ndarray, periods_per_year: float) -> float:
    growth = float(np.prod(1.0 + returns))
    years = returns.size / periods_per_year
    if growth <= 0.0:
        return -1.0
    # exp(709) is the largest finite double; clamp short, explosive samples.
    exponent = min(math.log(growth) / years, 700.0)
    return float(math.expm1(exponent))


def _sortino(returns: np.ndarray, target: float, periods_per_year: float) -> float:
    shortfall = np.minimum(returns - target, 0.0)
    downside_dev = float(np.sqrt(np.mean(shortfall**2)))
    if downside_dev == 0.0:
        return 0.0
    return _safe_ratio(float(returns.mean()) - target, downside_dev) * math.sqrt(periods_per_year)


def conditional_value_at_risk(returns: np.ndarray, alpha: float = DEFAULT_CVAR_ALPHA) -> float:
    """Mean of the worst ``1 - alpha`` fraction of returns (at least one observation)."""
    if not 0.0 < alpha < 1.0:
        raise InvalidInputError(f"alpha must lie in (0, 1), got {alpha}")
    ordered = np.sort(returns)
    tail = max(1, int(math.ceil((1.0 - alpha) * ordered.size - 1e-12)))
    return float(ordered[:tail].mean())


def _trade_stats(returns: np.ndarray) -> dict[str, float]:
    wins = returns[returns > 0]
    losses = returns[returns < 0]
    win_rate = float(wins.size / returns.size)
    profit_factor = _safe_ratio(float(wins.sum()), abs(float(losses.sum())))
    avg_win = float(wins.mean()) if wins.size else 0.0
    avg_loss = abs(float(losses.mean())) if losses.size else 0.0
    payoff = _safe_ratio(avg_win, avg_loss)
    kelly = win_rate - (1.0 - win_rate) / payoff if payoff > 0 else 0.0
    return {
        "win_rate": win_rate,
        "profit_factor": profit_factor,
        "payoff_ratio": payoff,
        "kelly_fraction": float(kelly),
        "winning_periods": int(wins.size),
        "losing_periods": int(losses.size),
    }


def compute_metrics(
    returns: Sequence[float] | np.ndarray | pd.Series,
    periods_per_year: float = 252.0,
    risk_free_rate: float = 0.0,
    cvar_alpha: float = DEFAULT_CVAR_ALPHA,
) -> Metrics:
    """
    Compute risk/return statistics for a periodic return series.

    risk_free_rate is annual; the per-period hurdle is risk_free_rate / periods_per_year
    and doubles as the Sortino target. Raises InvalidInputError for empty or
    non-finite input.
    """
    arr = as_return_array(returns)
    if periods_per_year <= 0 or not math.isfinite(periods_per_year):
        raise InvalidInputError(f"periods_per_year must be positive, got {periods_per_year}")
    if not math.isfinite(risk_free_rate):
        raise InvalidInputError("risk_free_rate must be finite")

    hurdle = risk_free_rate / periods_per_year
    ann = math.sqrt(periods_per_year)
    stdev = _stdev(arr)

    sharpe = _safe_ratio(float(arr.mean()) - hurdle, stdev) * ann if stdev > 0 else 0.0
    sortino = _sortino(arr, hurdle, periods_per_year) if arr.size >= 2 else 0.0
    max_dd = _max_drawdown(arr)
    cagr = _cagr(arr, periods_per_year)
    calmar = _safe_ratio(cagr, abs(max_dd)) if arr.size >= 2 else 0.0
    trade_stats = _trade_stats(arr)

    return Metrics(
        total_return=float(np.prod(1.0 + arr) - 1.0),
        cagr=cagr,
        volatility=stdev * ann,
        sharpe=float(sharpe),
        sortino=float(sortino),
        calmar=float(calmar),
        max_drawdown=max_dd,
        cvar=conditional_value_at_risk(arr, cvar_alpha),
        cvar_alpha=float(cvar_alpha),
        win_rate=trade_stats["win_rate"],
        profit_factor=trade_stats["profit_factor"],
        payoff_ratio=trade_stats["payoff_ratio"],
        kelly_fraction=trade_stats["kelly_fraction"],
        num_periods=int(arr.size),
        winning_periods=trade_stats["winning_periods"],
        losing_periods=trade_stats["losing_periods"],
    )
