"""Per-call configuration objects and YAML helpers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass(slots=True)
class CostModelConfig:
    commission_bps: float = 0.0
    slippage_bps: float = 0.0
    min_trade_fee: float = 0.0


@dataclass(slots=True)
class BacktestConfig:
    initial_cash: float = 100_000.0
    periods_per_year: float = 252.0
    risk_free_rate: float = 0.0
    gap_policy: str = "worse_price"
    stop_priority: tuple[str, ...] = ()


@dataclass(slots=True)
class OptimizerConfig:
    min_periods: int = 20
    max_condition_number: float = 1e10
    max_iterations: int = 500
    tolerance: float = 1e-10
    weight_tolerance: float = 1e-6
    risk_parity_tolerance: float = 1e-8
    lp_max_iterations: int = 100_000


@dataclass(slots=True)
class GarchConfig:
    max_iterations: int = 200
    tolerance: float = 1e-8
    min_observations: int = 10


@dataclass(slots=True)
class CoreConfig:
    costs: CostModelConfig = field(default_factory=CostModelConfig)
    backtest: BacktestConfig = field(default_factory=BacktestConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    garch: GarchConfig = field(default_factory=GarchConfig)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["backtest"]["stop_priority"] = list(self.backtest.stop_priority)
        return payload

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "CoreConfig":
        backtest = dict(payload.get("backtest", {}))
        if "stop_priority" in backtest:
            backtest["stop_priority"] = tuple(backtest["stop_priority"] or ())
        return CoreConfig(
            costs=CostModelConfig(**payload.get("costs", {})),
            backtest=BacktestConfig(**backtest),
            optimizer=OptimizerConfig(**payload.get("optimizer", {})),
            garch=GarchConfig(**payload.get("garch", {})),
        )


def load_config(path: str | Path) -> CoreConfig:
    """Load core configuration from YAML."""
    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    return CoreConfig.from_dict(payload)


def save_config(config: CoreConfig, path: str | Path) -> None:
    """Persist core configuration to YAML."""
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with file_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config.to_dict(), handle, sort_keys=False)
