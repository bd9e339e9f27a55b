"""Cross-sectional statistics for factor evaluation."""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np
from scipy import stats


def spearman(x: Sequence[float], y: Sequence[float]) -> tuple[float, float]:
    """
    Spearman rank correlation with a two-tailed p-value.

    Ties receive average ranks. Returns (nan, nan) when the inputs differ in length,
    have fewer than three observations, or either side is constant.
    """
    xa = np.asarray(x, dtype=float)
    ya = np.asarray(y, dtype=float)
    if xa.shape != ya.shape or xa.ndim != 1 or xa.size < 3:
        return math.nan, math.nan
    if np.ptp(xa) == 0 or np.ptp(ya) == 0:
        return math.nan, math.nan
    result = stats.spearmanr(xa, ya)
    r = float(np.clip(result.statistic, -1.0, 1.0))
    if abs(abs(r) - 1.0) < 1e-12:
        return math.copysign(1.0, r), 0.0
    return r, float(result.pvalue)


def quintile_spread(scores: Sequence[float], returns: Sequence[float], n_quantiles: int = 5) -> float:
    """
    Mean return of the top score bucket minus the mean of the bottom bucket.

    Observations are sorted by score and cut into ``n_quantiles`` groups of
    ``len // n_quantiles``; returns nan for invalid input.
    """
    sa = np.asarray(scores, dtype=float)
    ra = np.asarray(returns, dtype=float)
    n = sa.size
    if n_quantiles <= 0 or sa.shape != ra.shape or n < n_quantiles:
        return math.nan
    group = n // n_quantiles
    order = np.argsort(sa, kind="stable")
    bottom = ra[order[:group]].mean()
    top = ra[order[n - group :]].mean()
    return float(top - bottom)
