"""Singular-fit detection from θ and its lower bounds.

A covariance estimate is singular when it sits on the boundary of the
feasible set: a zero variance, or a correlation of ±1.  In the θ
parameterisation both cases show up as a diagonal element of some
T_k reaching its lower bound of zero, so checking the finitely
bounded components of θ is enough, whatever the number of grouping
terms or their block sizes.
"""

from __future__ import annotations

from collections.abc import Iterable

import numpy as np

DEFAULT_SINGULAR_TOL = 1e-4


def is_singular(
    theta: np.ndarray,
    lowerbd: np.ndarray,
    tol: float = DEFAULT_SINGULAR_TOL,
) -> bool:
    """Return ``True`` if a finitely bounded θ component is within *tol* of its bound.

    Args:
        theta: Covariance parameter ``(k,)``.
        lowerbd: Lower bounds ``(k,)``; ``-inf`` marks unbounded
            components, which are never considered.
        tol: Absolute tolerance (``>= 0``).

    Raises:
        ValueError: If the lengths differ or *tol* is negative.
    """
    theta = np.asarray(theta, dtype=np.float64)
    lowerbd = np.asarray(lowerbd, dtype=np.float64)
    if theta.shape != lowerbd.shape:
        raise ValueError(
            f"theta has shape {theta.shape} but lowerbd has shape {lowerbd.shape}."
        )
    if tol < 0:
        raise ValueError(f"tol must be non-negative, got {tol}.")
    bounded = np.isfinite(lowerbd)
    return bool(np.any(np.abs(theta[bounded] - lowerbd[bounded]) <= tol))


def singular_flags(
    thetas: Iterable[np.ndarray],
    lowerbd: np.ndarray,
    tol: float = DEFAULT_SINGULAR_TOL,
) -> np.ndarray:
    """Apply :func:`is_singular` to each θ, returning a boolean array."""
    return np.array(
        [is_singular(theta, lowerbd, tol) for theta in thetas], dtype=bool
    )


__all__ = ["DEFAULT_SINGULAR_TOL", "is_singular", "singular_flags"]
