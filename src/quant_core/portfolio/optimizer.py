"""
Long-only portfolio weight solvers over a historical returns matrix.

Every solver shares the same guard rails and the same fallback chain: the primary
solver is tried first and, if it is rejected by the guards or fails numerically,
equal weights are returned with ``fallback_used=True`` and a ``reason`` tag.
Numerical failures are never raised to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from typing import Callable, Sequence

import numpy as np
import pandas as pd
from scipy import optimize, sparse

from quant_core.analytics.metrics import conditional_value_at_risk
from quant_core.config import OptimizerConfig
from quant_core.errors import InvalidInputError, ResourceExceededError

logger = logging.getLogger(__name__)

NORMAL = "normal"
EQUAL_WEIGHT = "equal_weight"

ReturnsInput = np.ndarray | pd.DataFrame | Sequence[Sequence[float]]


@dataclass(frozen=True, slots=True)
class OptimizationResult:
    method: str
    weights: dict[str, float]
    fallback_used: bool
    converged: bool
    reason: str = NORMAL
    iterations: int = 0

    def as_series(self) -> pd.Series:
        return pd.Series(self.weights, dtype=float, name=self.method)

    def weight_array(self, symbols: Sequence[str]) -> np.ndarray:
        return np.array([self.weights[s] for s in symbols], dtype=float)


@dataclass(slots=True)
class SolverAttempt:
    """Outcome of one strategy in a fallback chain."""

    weights: np.ndarray | None
    converged: bool
    iterations: int = 0
    reason: str = NORMAL


@dataclass(slots=True)
class _Problem:
    returns: np.ndarray
    symbols: list[str]
    config: OptimizerConfig
    cov: np.ndarray = field(init=False)
    mean: np.ndarray = field(init=False)

    @property
    def n_assets(self) -> int:
        return len(self.symbols)

    @property
    def n_periods(self) -> int:
        return self.returns.shape[0]


def _prepare(returns_matrix: ReturnsInput, symbols: Sequence[str] | None) -> tuple[np.ndarray, list[str]]:
    if isinstance(returns_matrix, pd.DataFrame):
        if symbols is None:
            symbols = [str(c) for c in returns_matrix.columns]
        else:
            missing = [s for s in symbols if s not in returns_matrix.columns]
            if missing:
                raise InvalidInputError(f"symbols not found in returns_matrix columns: {missing}")
            returns_matrix = returns_matrix.loc[:, list(symbols)]
        values = returns_matrix.to_numpy(dtype=float)
    else:
        values = np.asarray(returns_matrix, dtype=float)
    if values.ndim != 2:
        raise InvalidInputError(f"returns_matrix must be 2-D (T x N), got shape {values.shape}")
    if symbols is None:
        raise InvalidInputError("symbols are required for array input")
    symbols = [str(s) for s in symbols]
    if len(symbols) == 0 or values.shape[0] == 0:
        raise InvalidInputError("returns_matrix cannot be empty")
    if len(symbols) != values.shape[1]:
        raise InvalidInputError(
            f"symbols has {len(symbols)} entries but returns_matrix has {values.shape[1]} columns"
        )
    if len(set(symbols)) != len(symbols):
        raise InvalidInputError("symbols must be unique")
    return values, symbols


def _guard(problem: _Problem) -> str | None:
    """Return a rejection reason, or None when the inputs are fit to optimize."""
    if not np.all(np.isfinite(problem.returns)):
        return "non_finite_input"
    if problem.n_periods < problem.config.min_periods:
        return "insufficient_history"
    cov = np.atleast_2d(np.cov(problem.returns, rowvar=False, ddof=1))
    cond = np.linalg.cond(cov)
    if not np.isfinite(cond) or cond > problem.config.max_condition_number:
        return "ill_conditioned_covariance"
    problem.cov = cov
    problem.mean = problem.returns.mean(axis=0)
    return None


def _normalized_cov(cov: np.ndarray) -> np.ndarray:
    # Rescaling leaves the argmin unchanged and keeps solver tolerances meaningful.
    scale = float(np.mean(np.diag(cov)))
    return cov / scale if scale > 0 else cov


def _finalize(weights: np.ndarray | None, tolerance: float) -> np.ndarray | None:
    """Clean solver output into a valid long-only weight vector, or None if unusable."""
    if weights is None or not np.all(np.isfinite(weights)):
        return None
    if weights.min() < -1e-7:
        return None
    out = np.clip(weights, 0.0, None)
    total = out.sum()
    if total <= 0:
        return None
    out = out / total
    if abs(out.sum() - 1.0) >= tolerance:
        return None
    return out


def _equal_weight(problem: _Problem) -> SolverAttempt:
    n = problem.n_assets
    return SolverAttempt(weights=np.full(n, 1.0 / n), converged=True, reason=EQUAL_WEIGHT)


def _run_chain(method: str, problem: _Problem, primary: Callable[[_Problem], SolverAttempt]) -> OptimizationResult:
    """Try the primary solver, then equal weight; tag the result accordingly."""
    rejection = _guard(problem)
    attempts: list[tuple[str, Callable[[_Problem], SolverAttempt]]] = []
    if rejection is None:
        attempts.append((method, primary))
    attempts.append((EQUAL_WEIGHT, _equal_weight))

    reason = rejection
    for name, strategy in attempts:
        try:
            attempt = strategy(problem)
        except (np.linalg.LinAlgError, ValueError, FloatingPointError) as exc:
            attempt = SolverAttempt(weights=None, converged=False, reason=f"solver_error:{type(exc).__name__}")
        weights = _finalize(attempt.weights, problem.config.weight_tolerance)
        if weights is None or not attempt.converged:
            reason = attempt.reason if attempt.reason != NORMAL else "invalid_solution"
            logger.debug("%s strategy %s failed: %s", method, name, reason)
            continue
        fallback = name == EQUAL_WEIGHT
        if fallback:
            logger.warning("%s fell back to equal weight (%s)", method, reason)
        return OptimizationResult(
            method=method,
            weights={sym: float(w) for sym, w in zip(problem.symbols, weights)},
            fallback_used=fallback,
            converged=not fallback,
            reason=reason if fallback else NORMAL,
            iterations=attempt.iterations,
        )
    raise ResourceExceededError(f"{method}: no strategy produced weights")


def _simplex_constraint(n: int) -> dict:
    return {"type": "eq", "fun": lambda w: w.sum() - 1.0, "jac": lambda w: np.ones(n)}


def _solve_min_variance(problem: _Problem) -> SolverAttempt:
    n = problem.n_assets
    cov = _normalized_cov(problem.cov)
    res = optimize.minimize(
        lambda w: float(w @ cov @ w),
        np.full(n, 1.0 / n),
        jac=lambda w: 2.0 * cov @ w,
        method="SLSQP",
        bounds=[(0.0, 1.0)] * n,
        constraints=[_simplex_constraint(n)],
        options={"maxiter": problem.config.max_iterations, "ftol": problem.config.tolerance},
    )
    return SolverAttempt(
        weights=res.x if res.success else None,
        converged=bool(res.success),
        iterations=int(res.nit),
        reason=NORMAL if res.success else f"not_converged:{res.message}",
    )


def _solve_max_sharpe(problem: _Problem, risk_free: float) -> SolverAttempt:
    """
    Scaling reformulation: minimize y' S y subject to (mu - rf)' y = 1, y >= 0,
    then w = y / sum(y).
    """
    excess = problem.mean - risk_free
    positive = excess > 0
    if not positive.any():
        return SolverAttempt(weights=None, converged=False, reason="no_positive_excess_return")
    scale = float(np.max(np.abs(excess)))
    excess = excess / scale
    cov = _normalized_cov(problem.cov)
    y0 = positive.astype(float) / float(excess[positive].sum())
    res = optimize.minimize(
        lambda y: float(y @ cov @ y),
        y0,
        jac=lambda y: 2.0 * cov @ y,
        method="SLSQP",
        bounds=[(0.0, None)] * problem.n_assets,
        constraints=[{"type": "eq", "fun": lambda y: excess @ y - 1.0, "jac": lambda y: excess}],
        options={"maxiter": problem.config.max_iterations, "ftol": problem.config.tolerance},
    )
    if not res.success:
        return SolverAttempt(weights=None, converged=False, iterations=int(res.nit), reason=f"not_converged:{res.message}")
    return SolverAttempt(weights=res.x, converged=True, iterations=int(res.nit))


def _solve_risk_parity(problem: _Problem) -> SolverAttempt:
    """
    Cyclical coordinate descent on  1/2 y'Sy - sum(b_i log y_i)  with b_i = 1/n.

    At the optimum y_i (S y)_i = b_i, so w = y / sum(y) equalizes risk contributions.
    """
    cov = _normalized_cov(problem.cov)
    n = problem.n_assets
    budget = np.full(n, 1.0 / n)
    diag = np.diag(cov)
    y = 1.0 / np.sqrt(diag)
    y = y / y.sum()
    tol = problem.config.risk_parity_tolerance
    for sweep in range(1, problem.config.max_iterations + 1):
        for i in range(n):
            c = float(cov[i] @ y - diag[i] * y[i])
            y[i] = (-c + math.sqrt(c * c + 4.0 * diag[i] * budget[i])) / (2.0 * diag[i])
        w = y / y.sum()
        contrib = w * (cov @ w)
        total = contrib.sum()
        if total > 0 and np.max(np.abs(contrib / total - budget)) < tol:
            return SolverAttempt(weights=w, converged=True, iterations=sweep)
    return SolverAttempt(
        weights=None,
        converged=False,
        iterations=problem.config.max_iterations,
        reason="iteration_cap_reached",
    )


def _check_alpha(alpha: float) -> None:
    if not 0.0 < alpha < 1.0:
        raise InvalidInputError(f"alpha must lie in (0, 1), got {alpha}")


def _linprog(problem: _Problem, c: np.ndarray, a_ub, b_ub: np.ndarray, a_eq, bounds) -> SolverAttempt:
    res = optimize.linprog(
        c,
        A_ub=a_ub,
        b_ub=b_ub,
        A_eq=a_eq,
        b_eq=np.array([1.0]),
        bounds=bounds,
        method="highs",
        options={"maxiter": problem.config.lp_max_iterations},
    )
    iterations = int(getattr(res, "nit", 0) or 0)
    if res.status != 0 or res.x is None:
        return SolverAttempt(weights=None, converged=False, iterations=iterations, reason=f"lp_status_{res.status}")
    return SolverAttempt(weights=res.x[: problem.n_assets], converged=True, iterations=iterations)


def _solve_cvar(problem: _Problem, alpha: float) -> SolverAttempt:
    """
    Scenario CVaR minimization (Rockafellar-Uryasev). Variables [w, zeta, u]:
    minimize zeta + sum(u) / ((1 - alpha) T)  s.t.  u_t >= -r_t'w - zeta, u >= 0.
    """
    r = problem.returns
    t, n = r.shape
    c = np.concatenate([np.zeros(n), [1.0], np.full(t, 1.0 / ((1.0 - alpha) * t))])
    a_ub = sparse.hstack(
        [sparse.csr_matrix(-r), sparse.csr_matrix(-np.ones((t, 1))), -sparse.identity(t, format="csr")],
        format="csr",
    )
    b_ub = np.zeros(t)
    a_eq = sparse.csr_matrix(np.concatenate([np.ones(n), np.zeros(1 + t)]).reshape(1, -1))
    bounds = [(0.0, 1.0)] * n + [(None, None)] + [(0.0, None)] * t
    return _linprog(problem, c, a_ub, b_ub, a_eq, bounds)


def _solve_cdar(problem: _Problem, alpha: float) -> SolverAttempt:
    """
    Conditional drawdown-at-risk on the uncompounded cumulative path C_t w.
    Variables [w, zeta, z, u] with u the running peak (u >= 0, u_t >= u_{t-1},
    u_t >= C_t w) and z_t >= u_t - C_t w - zeta, z >= 0.
    """
    cum = np.cumsum(problem.returns, axis=0)
    t, n = cum.shape
    cum_sp = sparse.csr_matrix(cum)
    eye = sparse.identity(t, format="csr")
    ones_col = sparse.csr_matrix(np.ones((t, 1)))
    zeros_col = sparse.csr_matrix((t, 1))
    zeros_tt = sparse.csr_matrix((t, t))

    drawdown_tail = sparse.hstack([-cum_sp, -ones_col, -eye, eye], format="csr")
    peak_above_path = sparse.hstack([cum_sp, zeros_col, zeros_tt, -eye], format="csr")
    blocks = [drawdown_tail, peak_above_path]
    if t > 1:
        lag = sparse.eye(t - 1, t, k=0, format="csr") - sparse.eye(t - 1, t, k=1, format="csr")
        peak_monotone = sparse.hstack(
            [sparse.csr_matrix((t - 1, n)), sparse.csr_matrix((t - 1, 1)), sparse.csr_matrix((t - 1, t)), lag],
            format="csr",
        )
        blocks.append(peak_monotone)
    a_ub = sparse.vstack(blocks, format="csr")
    b_ub = np.zeros(a_ub.shape[0])

    c = np.concatenate([np.zeros(n), [1.0], np.full(t, 1.0 / ((1.0 - alpha) * t)), np.zeros(t)])
    a_eq = sparse.csr_matrix(np.concatenate([np.ones(n), np.zeros(1 + 2 * t)]).reshape(1, -1))
    bounds = [(0.0, 1.0)] * n + [(None, None)] + [(0.0, None)] * t + [(0.0, None)] * t
    return _linprog(problem, c, a_ub, b_ub, a_eq, bounds)


def _problem(returns_matrix: ReturnsInput, symbols: Sequence[str] | None, config: OptimizerConfig | None) -> _Problem:
    values, names = _prepare(returns_matrix, symbols)
    return _Problem(returns=values, symbols=names, config=config if config is not None else OptimizerConfig())


def optimize_min_variance(
    returns_matrix: ReturnsInput,
    symbols: Sequence[str] | None = None,
    config: OptimizerConfig | None = None,
) -> OptimizationResult:
    """Minimize w'Sw subject to sum(w) = 1, w >= 0."""
    problem = _problem(returns_matrix, symbols, config)
    return _run_chain("min_variance", problem, _solve_min_variance)


def optimize_max_sharpe(
    returns_matrix: ReturnsInput,
    symbols: Sequence[str] | None = None,
    risk_free: float = 0.0,
    config: OptimizerConfig | None = None,
) -> OptimizationResult:
    """Maximize (w'mu - rf) / sqrt(w'Sw); ``risk_free`` is per period like the returns."""
    if not math.isfinite(risk_free):
        raise InvalidInputError("risk_free must be finite")
    problem = _problem(returns_matrix, symbols, config)
    return _run_chain("max_sharpe", problem, lambda p: _solve_max_sharpe(p, risk_free))


def optimize_risk_parity(
    returns_matrix: ReturnsInput,
    symbols: Sequence[str] | None = None,
    config: OptimizerConfig | None = None,
) -> OptimizationResult:
    """Equalize w_i (Sw)_i across assets."""
    problem = _problem(returns_matrix, symbols, config)
    return _run_chain("risk_parity", problem, _solve_risk_parity)


def optimize_cvar(
    returns_matrix: ReturnsInput,
    symbols: Sequence[str] | None = None,
    alpha: float = 0.95,
    config: OptimizerConfig | None = None,
) -> OptimizationResult:
    """Minimize historical CVaR at level ``alpha`` as a linear program."""
    _check_alpha(alpha)
    problem = _problem(returns_matrix, symbols, config)
    return _run_chain("cvar", problem, lambda p: _solve_cvar(p, alpha))


def optimize_cdar(
    returns_matrix: ReturnsInput,
    symbols: Sequence[str] | None = None,
    alpha: float = 0.95,
    config: OptimizerConfig | None = None,
) -> OptimizationResult:
    """Minimize conditional drawdown-at-risk at level ``alpha`` as a linear program."""
    _check_alpha(alpha)
    problem = _problem(returns_matrix, symbols, config)
    return _run_chain("cdar", problem, lambda p: _solve_cdar(p, alpha))


def portfolio_cvar(returns_matrix: np.ndarray, weights: np.ndarray, alpha: float = 0.95) -> float:
    """Historical CVaR (expected loss, positive number) of a fixed-weight portfolio."""
    portfolio_returns = np.asarray(returns_matrix, dtype=float) @ np.asarray(weights, dtype=float)
    return -conditional_value_at_risk(portfolio_returns, alpha)
