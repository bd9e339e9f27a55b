"""Performance analytics package."""

from .metrics import Metrics, compute_metrics, conditional_value_at_risk, drawdown_series
from .stats import quintile_spread, spearman

__all__ = [
    "Metrics",
    "compute_metrics",
    "conditional_value_at_risk",
    "drawdown_series",
    "quintile_spread",
    "spearman",
]
