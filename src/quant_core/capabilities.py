"""Static capability table exposed to callers choosing between implementations."""

from __future__ import annotations

from types import MappingProxyType

__version__ = "0.5.0"

FEATURES = MappingProxyType(
    {
        "backtest": True,
        "backtest_stops": True,
        "backtest_sweep": True,
        "metrics": True,
        "optimize_min_variance": True,
        "optimize_max_sharpe": True,
        "optimize_risk_parity": True,
        "optimize_cvar": True,
        "optimize_cdar": True,
        "garch": True,
        "stats_spearman": True,
        "stats_quintile_spread": True,
        "short_selling": False,
        "intraperiod_order_book": False,
    }
)


def has_feature(name: str) -> bool:
    """Return True when ``name`` is a supported feature; unknown names are unsupported."""
    return bool(FEATURES.get(name, False))


def version() -> str:
    return __version__
