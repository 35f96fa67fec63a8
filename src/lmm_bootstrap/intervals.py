"""Bootstrap interval estimators.

Two interval types are computed from the draws of one parameter:

* **Shortest coverage**: the narrowest window that contains
  ⌈level · n⌉ of the sorted draws.  Preferred for variance components,
  whose bootstrap distributions are skewed and often pile up at zero.
* **Equal tail**: the (α/2, 1 − α/2) empirical quantiles.

``nan`` draws (undefined correlations at a singular boundary) are
dropped before either interval is formed.
"""

from __future__ import annotations

import math

import numpy as np


def _clean(values: np.ndarray, level: float) -> np.ndarray:
    if not 0.0 < level < 1.0:
        raise ValueError(f"level must be in (0, 1), got {level}.")
    v = np.asarray(values, dtype=np.float64).ravel()
    return np.sort(v[~np.isnan(v)])


def shortest_coverage_interval(
    values: np.ndarray,
    level: float = 0.95,
) -> tuple[float, float]:
    """Narrowest interval containing a *level* fraction of *values*.

    Returns ``(nan, nan)`` when no finite draws remain.
    """
    v = _clean(values, level)
    n = len(v)
    if n == 0:
        return (math.nan, math.nan)
    k = math.ceil(level * n)
    if k >= n:
        return (float(v[0]), float(v[-1]))
    widths = v[k - 1 :] - v[: n - k + 1]
    i = int(np.argmin(widths))
    return (float(v[i]), float(v[i + k - 1]))


def equal_tail_interval(
    values: np.ndarray,
    level: float = 0.95,
) -> tuple[float, float]:
    """Central percentile interval of *values*."""
    v = _clean(values, level)
    if len(v) == 0:
        return (math.nan, math.nan)
    alpha = 1.0 - level
    lo, hi = np.quantile(v, [alpha / 2.0, 1.0 - alpha / 2.0])
    return (float(lo), float(hi))


INTERVAL_METHODS = {
    "shortest": shortest_coverage_interval,
    "equaltail": equal_tail_interval,
}


__all__ = [
    "INTERVAL_METHODS",
    "equal_tail_interval",
    "shortest_coverage_interval",
]
