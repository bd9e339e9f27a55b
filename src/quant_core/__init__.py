"""Deterministic quant compute core."""

from .analytics import Metrics, compute_metrics
from .backtest import BacktestResult, simulate_backtest, sweep_backtests
from .capabilities import FEATURES, __version__, has_feature, version
from .config import (
    BacktestConfig,
    CoreConfig,
    CostModelConfig,
    GarchConfig,
    OptimizerConfig,
    load_config,
    save_config,
)
from .errors import InvalidInputError, PriceOverflowError, QuantCoreError, ResourceExceededError
from .execution import CostModel
from .fixed_point import Price
from .forecasting import GarchForecast, forecast_garch
from .portfolio import (
    OptimizationResult,
    optimize_cdar,
    optimize_cvar,
    optimize_max_sharpe,
    optimize_min_variance,
    optimize_risk_parity,
)
from .risk import StopConfig

__all__ = [
    "BacktestConfig",
    "BacktestResult",
    "CoreConfig",
    "CostModel",
    "CostModelConfig",
    "FEATURES",
    "GarchConfig",
    "GarchForecast",
    "InvalidInputError",
    "Metrics",
    "OptimizationResult",
    "OptimizerConfig",
    "Price",
    "PriceOverflowError",
    "QuantCoreError",
    "ResourceExceededError",
    "StopConfig",
    "__version__",
    "compute_metrics",
    "forecast_garch",
    "has_feature",
    "load_config",
    "optimize_cdar",
    "optimize_cvar",
    "optimize_max_sharpe",
    "optimize_min_variance",
    "optimize_risk_parity",
    "save_config",
    "simulate_backtest",
    "sweep_backtests",
    "version",
]
