"""Portfolio construction package."""

from .optimizer import (
    OptimizationResult,
    optimize_cdar,
    optimize_cvar,
    optimize_max_sharpe,
    optimize_min_variance,
    optimize_risk_parity,
    portfolio_cvar,
)

__all__ = [
    "OptimizationResult",
    "optimize_cdar",
    "optimize_cvar",
    "optimize_max_sharpe",
    "optimize_min_variance",
    "optimize_risk_parity",
    "portfolio_cvar",
]
