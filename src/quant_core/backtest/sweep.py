"""Fan-out/fan-in parameter sweeps over independent simulations."""

from __future__ import annotations

from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from functools import partial
import logging
from typing import Any, Callable, Mapping, Sequence, TypeVar

import numpy as np

from quant_core.analytics.metrics import Metrics, compute_metrics
from quant_core.backtest.engine import BacktestResult, PriceSchedule, WeightSchedule, simulate_backtest
from quant_core.config import CostModelConfig
from quant_core.errors import InvalidInputError
from quant_core.execution.costs import CostModel
from quant_core.risk.stops import StopConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

EXECUTOR_KINDS = ("process", "thread")


def _make_executor(kind: str, max_workers: int | None) -> Executor:
    if kind == "process":
        return ProcessPoolExecutor(max_workers=max_workers)
    if kind == "thread":
        return ThreadPoolExecutor(max_workers=max_workers)
    raise InvalidInputError(f"executor must be one of {EXECUTOR_KINDS}, got {kind!r}")


def fan_out(
    fn: Callable[[T], R],
    tasks: Sequence[T],
    max_workers: int | None = None,
    executor: str = "process",
) -> list[R]:
    """
    Run ``fn`` over independent tasks and return results in task order.

    ``max_workers=1`` runs inline. Tasks share no state, so no locking is needed;
    the first task error propagates after the pool shuts down.
    """
    if not tasks:
        return []
    if max_workers == 1:
        return [fn(task) for task in tasks]
    with _make_executor(executor, max_workers) as pool:
        results = list(pool.map(fn, tasks))
    logger.debug("Sweep finished %d tasks on %s pool", len(results), executor)
    return results


def _simulate_one(
    weight_schedule: WeightSchedule,
    price_schedule: PriceSchedule,
    initial_cash: float,
    cost_model: CostModel | CostModelConfig | None,
    stop_configs: StopConfig | Mapping[str, StopConfig] | None,
    options: Mapping[str, Any],
) -> BacktestResult:
    return simulate_backtest(weight_schedule, price_schedule, initial_cash, cost_model, stop_configs, **options)


def sweep_backtests(
    weight_schedules: Sequence[WeightSchedule],
    price_schedule: PriceSchedule,
    initial_cash: float,
    cost_model: CostModel | CostModelConfig | None = None,
    stop_configs: StopConfig | Mapping[str, StopConfig] | None = None,
    *,
    max_workers: int | None = None,
    executor: str = "process",
    **options: Any,
) -> list[BacktestResult]:
    """Simulate each weight-schedule variant against the same prices, one task per variant."""
    task = partial(
        _simulate_one,
        price_schedule=price_schedule,
        initial_cash=initial_cash,
        cost_model=cost_model,
        stop_configs=stop_configs,
        options=options,
    )
    return fan_out(task, list(weight_schedules), max_workers=max_workers, executor=executor)


def sweep_metrics(
    return_sets: Sequence[Sequence[float] | np.ndarray],
    periods_per_year: float = 252.0,
    risk_free_rate: float = 0.0,
    *,
    max_workers: int | None = None,
    executor: str = "process",
) -> list[Metrics]:
    """Compute Metrics for many return series in parallel."""
    task = partial(compute_metrics, periods_per_year=periods_per_year, risk_free_rate=risk_free_rate)
    return fan_out(task, list(return_sets), max_workers=max_workers, executor=executor)
