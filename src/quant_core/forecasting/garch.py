"""
GARCH(p, q) volatility forecasting by Gaussian maximum likelihood.

Variance equation, with p ARCH lags and q GARCH lags:

    sigma2_t = omega + sum_i alpha_i * eps2_{t-i} + sum_j beta_j * sigma2_{t-j}

Parameters are constrained to omega > 0, alpha, beta >= 0 and
sum(alpha) + sum(beta) < 1. When the fit fails or the likelihood is degenerate the
forecast falls back to the sample variance of the input with ``converged=False``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
import math
from typing import Any, Sequence

import numpy as np
import pandas as pd
from scipy import optimize

from quant_core.config import GarchConfig
from quant_core.errors import InvalidInputError

logger = logging.getLogger(__name__)

MEAN_MODES = ("zero", "constant")
STATIONARITY_MARGIN = 1e-6
_LOG_2PI = math.log(2.0 * math.pi)


@dataclass(frozen=True, slots=True)
class GarchForecast:
    variance: float
    volatility: float
    converged: bool
    reason: str
    omega: float
    alpha: tuple[float, ...]
    beta: tuple[float, ...]
    mean: float
    log_likelihood: float
    n_obs: int
    iterations: int
    variance_path: tuple[float, ...]

    @property
    def fallback_used(self) -> bool:
        return not self.converged

    @property
    def persistence(self) -> float:
        return float(sum(self.alpha) + sum(self.beta))

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["fallback_used"] = self.fallback_used
        return payload


def _conditional_variances(
    params: np.ndarray,
    eps2: np.ndarray,
    p: int,
    q: int,
    backcast: float,
) -> np.ndarray:
    omega = params[0]
    alpha = params[1 : 1 + p]
    beta = params[1 + p : 1 + p + q]
    n = eps2.size
    sigma2 = np.empty(n)
    for t in range(n):
        value = omega
        for i in range(p):
            value += alpha[i] * (eps2[t - 1 - i] if t - 1 - i >= 0 else backcast)
        for j in range(q):
            value += beta[j] * (sigma2[t - 1 - j] if t - 1 - j >= 0 else backcast)
        sigma2[t] = value
    return sigma2


def _negative_log_likelihood(params: np.ndarray, eps2: np.ndarray, p: int, q: int, backcast: float) -> float:
    sigma2 = _conditional_variances(params, eps2, p, q, backcast)
    if np.any(sigma2 <= 0) or not np.all(np.isfinite(sigma2)):
        return 1e12
    return float(0.5 * np.sum(_LOG_2PI + np.log(sigma2) + eps2 / sigma2))


def _project_variances(
    params: np.ndarray,
    eps2: np.ndarray,
    sigma2: np.ndarray,
    p: int,
    q: int,
    horizon: int,
) -> list[float]:
    """Multi-step forecasts; future squared shocks are replaced by their expectation."""
    omega = params[0]
    alpha = params[1 : 1 + p]
    beta = params[1 + p : 1 + p + q]
    shocks = list(eps2)
    variances = list(sigma2)
    path: list[float] = []
    for _ in range(horizon):
        value = omega
        for i in range(p):
            value += alpha[i] * shocks[-1 - i]
        for j in range(q):
            value += beta[j] * variances[-1 - j]
        path.append(float(value))
        shocks.append(value)
        variances.append(value)
    return path


def _fallback(
    returns: np.ndarray,
    reason: str,
    horizon: int,
    mean: float = 0.0,
    iterations: int = 0,
) -> GarchForecast:
    variance = float(np.var(returns, ddof=1)) if returns.size >= 2 else 0.0
    logger.warning("GARCH fallback to sample variance (%s, n=%d)", reason, returns.size)
    return GarchForecast(
        variance=variance,
        volatility=math.sqrt(variance),
        converged=False,
        reason=reason,
        omega=variance,
        alpha=(),
        beta=(),
        mean=mean,
        log_likelihood=math.nan,
        n_obs=int(returns.size),
        iterations=iterations,
        variance_path=tuple([variance] * horizon),
    )


def _starting_values(p: int, q: int) -> np.ndarray:
    if q > 0:
        alpha = [0.05 / p] * p
        beta = [0.90 / q] * q
    else:
        alpha = [0.3 / p] * p
        beta = []
    omega = 1.0 - sum(alpha) - sum(beta)
    return np.array([omega, *alpha, *beta], dtype=float)


def forecast_garch(
    returns: Sequence[float] | np.ndarray | pd.Series,
    p: int = 1,
    q: int = 1,
    mean_mode: str = "zero",
    horizon: int = 1,
    config: GarchConfig | None = None,
) -> GarchForecast:
    """
    Fit GARCH(p, q) to a single return series and forecast the next-period variance.

    mean_mode "zero" treats returns as shocks; "constant" demeans by the sample mean.
    ``variance_path`` holds forecasts for 1..horizon steps ahead.
    """
    cfg = config if config is not None else GarchConfig()
    arr = np.asarray(returns, dtype=float)
    if arr.ndim != 1:
        raise InvalidInputError(f"returns must be one-dimensional, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise InvalidInputError("returns contains non-finite values")
    if p < 1 or q < 0:
        raise InvalidInputError(f"GARCH orders must satisfy p >= 1, q >= 0; got p={p}, q={q}")
    if mean_mode not in MEAN_MODES:
        raise InvalidInputError(f"mean_mode must be one of {MEAN_MODES}, got {mean_mode!r}")
    if horizon < 1:
        raise InvalidInputError("horizon must be >= 1")

    if arr.size < 2:
        return _fallback(arr, "insufficient_data", horizon)
    mu = float(arr.mean()) if mean_mode == "constant" else 0.0
    if arr.size < max(cfg.min_observations, p + q + 2):
        return _fallback(arr, "insufficient_data", horizon, mean=mu)

    eps = arr - mu
    scale2 = float(np.mean(eps**2))
    if scale2 <= (1e-12 * max(1.0, float(np.max(np.abs(arr))))) ** 2:
        return _fallback(arr, "degenerate_likelihood", horizon, mean=mu)

    # Fit on unit-variance shocks; omega is rescaled afterwards.
    eps2 = eps**2 / scale2
    backcast = 1.0
    n_params = 1 + p + q
    bounds = [(1e-8, 10.0)] + [(0.0, 1.0)] * (p + q)
    stationarity = {
        "type": "ineq",
        "fun": lambda x: 1.0 - STATIONARITY_MARGIN - float(np.sum(x[1:])),
        "jac": lambda x: np.concatenate([[0.0], -np.ones(n_params - 1)]),
    }
    try:
        res = optimize.minimize(
            _negative_log_likelihood,
            _starting_values(p, q),
            args=(eps2, p, q, backcast),
            method="SLSQP",
            bounds=bounds,
            constraints=[stationarity],
            options={"maxiter": cfg.max_iterations, "ftol": cfg.tolerance},
        )
    except (ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
        return _fallback(arr, f"solver_error:{type(exc).__name__}", horizon, mean=mu)

    params = np.asarray(res.x, dtype=float)
    iterations = int(getattr(res, "nit", 0) or 0)
    stationary = float(np.sum(params[1:])) < 1.0
    valid = bool(res.success) and np.all(np.isfinite(params)) and params[0] > 0 and np.all(params[1:] >= 0)
    if not (valid and stationary):
        reason = "non_stationary" if valid else f"not_converged:{res.message}"
        return _fallback(arr, reason, horizon, mean=mu, iterations=iterations)

    sigma2 = _conditional_variances(params, eps2, p, q, backcast)
    path = [v * scale2 for v in _project_variances(params, eps2, sigma2, p, q, horizon)]
    if not all(math.isfinite(v) and v > 0 for v in path):
        return _fallback(arr, "invalid_forecast", horizon, mean=mu, iterations=iterations)

    n = arr.size
    log_likelihood = -float(res.fun) - 0.5 * n * math.log(scale2)
    logger.debug("GARCH(%d,%d) converged in %d iterations", p, q, iterations)
    return GarchForecast(
        variance=path[0],
        volatility=math.sqrt(path[0]),
        converged=True,
        reason="normal",
        omega=float(params[0] * scale2),
        alpha=tuple(float(a) for a in params[1 : 1 + p]),
        beta=tuple(float(b) for b in params[1 + p :]),
        mean=mu,
        log_likelihood=log_likelihood,
        n_obs=int(n),
        iterations=iterations,
        variance_path=tuple(path),
    )
