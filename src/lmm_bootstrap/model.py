"""Fitted linear mixed model: the read-only contract the bootstrap consumes.

:class:`FittedModel` bundles the design matrices, the grouping-term
descriptors and the estimates (β̂, σ̂, θ̂) of a Gaussian LMM

    y = Xβ + Zb + ε,   b ~ N(0, σ² ΛΛ'),   ε ~ N(0, σ² I)

It is produced either by :func:`fit_lmm` or by any external fitting
front end that fills the same fields, and it is never mutated by the
bootstrap.  Cross-products of the design are cached on first use and
shared by every replicate's :class:`~.refit.ProfiledWorkspace`.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from functools import cached_property
from typing import Any

import numpy as np
import pandas as pd

from ._design import build_random_effects_design
from ._terms import (
    GroupingTerm,
    default_theta,
    n_theta,
    theta_lower_bounds,
    validate_terms,
)
from ._typing import ArrayLike
from .refit import ProfiledWorkspace, refit
from .transform import SigmaRho, sigma_rhos, sigmas


@dataclass(frozen=True)
class FittedModel:
    """An already-fitted Gaussian linear mixed-effects model.

    Attributes:
        X: Fixed-effects design ``(n, p)``, including the intercept
            column when one was fitted.
        Z: Random-effects design ``(n, q)`` in group-major layout.
        y: Observed response ``(n,)``.
        beta: Fixed-effect estimates ``(p,)``.
        sigma: Residual standard deviation (> 0).
        theta: Covariance parameter estimates ``(k,)``.
        terms: Grouping-term descriptors tiling θ and the columns of Z.
        reml: Whether the estimates are REML (``False`` → ML).
        fixed_names: Labels of the columns of X.
        converged: Whether the original optimisation converged.
        objective: Deviance at the estimates (``nan`` if unknown).
    """

    X: np.ndarray
    Z: np.ndarray
    y: np.ndarray
    beta: np.ndarray
    sigma: float
    theta: np.ndarray
    terms: tuple[GroupingTerm, ...]
    reml: bool = True
    fixed_names: tuple[str, ...] = ()
    converged: bool = True
    objective: float = float("nan")

    # ---- Shape metadata ----------------------------------------------

    @property
    def n_obs(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_fixed(self) -> int:
        return int(self.X.shape[1])

    @property
    def n_random(self) -> int:
        return int(self.Z.shape[1])

    @property
    def n_theta(self) -> int:
        return int(np.asarray(self.theta).shape[0])

    @property
    def lowerbd(self) -> np.ndarray:
        """Lower bounds of θ (0 for diagonal elements, −∞ otherwise)."""
        return theta_lower_bounds(self.terms)

    @property
    def coef_names(self) -> tuple[str, ...]:
        if self.fixed_names:
            return self.fixed_names
        return tuple(f"beta{j + 1}" for j in range(self.n_fixed))

    # ---- Derived covariance views ------------------------------------

    @property
    def sigmas(self) -> dict[str, np.ndarray]:
        return sigmas(self.theta, self.sigma, self.terms)

    @property
    def sigmarhos(self) -> dict[str, SigmaRho]:
        return sigma_rhos(self.theta, self.sigma, self.terms)

    # ---- Validation --------------------------------------------------

    def validate(self) -> None:
        """Check the contract; raise ``ValueError`` on any violation."""
        X = np.asarray(self.X)
        Z = np.asarray(self.Z)
        if X.ndim != 2 or Z.ndim != 2:
            raise ValueError(
                f"X and Z must be 2-D, got shapes {X.shape} and {Z.shape}."
            )
        n, p = X.shape
        if Z.shape[0] != n:
            raise ValueError(f"Z has {Z.shape[0]} rows, expected {n}.")
        if np.asarray(self.y).shape != (n,):
            raise ValueError(
                f"y must have shape ({n},), got {np.asarray(self.y).shape}."
            )
        if np.asarray(self.beta).shape != (p,):
            raise ValueError(
                f"beta must have shape ({p},), got {np.asarray(self.beta).shape}."
            )
        if self.fixed_names and len(self.fixed_names) != p:
            raise ValueError(
                f"fixed_names has {len(self.fixed_names)} entries for {p} columns of X."
            )
        if not (np.isfinite(self.sigma) and self.sigma > 0):
            raise ValueError(f"sigma must be finite and positive, got {self.sigma}.")
        theta = np.asarray(self.theta, dtype=np.float64)
        if theta.ndim != 1:
            raise ValueError(f"theta must be 1-D, got shape {theta.shape}.")
        if not (np.all(np.isfinite(theta)) and np.all(np.isfinite(self.beta))):
            raise ValueError("beta and theta must be finite.")
        validate_terms(self.terms, theta.shape[0], Z.shape[1])
        if np.any(theta < self.lowerbd):
            raise ValueError("theta violates its lower bounds.")
        if self.reml and n <= p:
            raise ValueError(
                f"REML needs more observations than fixed effects (n={n}, p={p})."
            )

    # ---- Refit support -----------------------------------------------

    @cached_property
    def _shared_workspace(self) -> ProfiledWorkspace:
        return ProfiledWorkspace.from_design(self.X, self.Z, self.terms, self.reml)

    def workspace(self) -> ProfiledWorkspace:
        """A fresh workspace sharing this model's cached cross-products."""
        return self._shared_workspace.clone()


# ------------------------------------------------------------------ #
# Fitting front end
# ------------------------------------------------------------------ #


def _as_design(X: ArrayLike | None, n: int) -> tuple[np.ndarray, list[str]]:
    if X is None:
        return np.empty((n, 0)), []
    if isinstance(X, pd.Series):
        X = X.to_frame()
    if isinstance(X, pd.DataFrame):
        return X.to_numpy(dtype=np.float64), [str(c) for c in X.columns]
    arr = np.asarray(X, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr[:, None]
    return arr, [f"x{j}" for j in range(arr.shape[1])]


def fit_lmm(
    X: ArrayLike | None,
    y: ArrayLike,
    groups: Any,
    *,
    random_slopes: list[int] | dict[str, list[int]] | None = None,
    correlated: bool | dict[str, bool] = True,
    fit_intercept: bool = True,
    reml: bool = True,
    theta_start: Sequence[float] | None = None,
    maxiter: int = 1000,
) -> FittedModel:
    """Fit a Gaussian LMM by profiled ML/REML.

    Args:
        X: Fixed-effect covariates ``(n, p)`` **without** an intercept
            column, or ``None`` for an intercept-only model.  A pandas
            DataFrame's column names become the coefficient labels.
        y: Response ``(n,)``.
        groups: Grouping labels: a 1-D array for a single factor or a
            dict of arrays for several (see
            :func:`~._design.build_random_effects_design`).
        random_slopes: Columns of *X* that get random slopes.
        correlated: Whether random-effect blocks carry correlations.
        fit_intercept: Prepend an intercept column to *X*.
        reml: REML (default) or ML estimation.
        theta_start: Optional starting θ; identity blocks by default.
        maxiter: Optimiser iteration budget.

    Returns:
        A validated :class:`FittedModel`.

    Raises:
        ValueError: On inconsistent shapes or an empty design.
    """
    y_arr = np.asarray(y, dtype=np.float64).reshape(-1)
    n = y_arr.shape[0]
    X_arr, names = _as_design(X, n)
    if X_arr.shape[0] != n:
        raise ValueError(f"X has {X_arr.shape[0]} rows, y has {n} observations.")

    Z, terms = build_random_effects_design(
        groups,
        X=X_arr if X is not None else None,
        random_slopes=random_slopes,
        correlated=correlated,
        slope_names=names,
    )

    if fit_intercept:
        X_arr = np.column_stack([np.ones(n), X_arr])
        names = ["(Intercept)", *names]
    if X_arr.shape[1] == 0:
        raise ValueError("The fixed-effects design has no columns.")

    ws = ProfiledWorkspace.from_design(X_arr, Z, terms, reml)
    lowerbd = theta_lower_bounds(terms)
    if theta_start is None:
        start = default_theta(terms)
    else:
        start = np.asarray(theta_start, dtype=np.float64)
    if start.shape != (n_theta(terms),):
        raise ValueError(
            f"theta_start must have length {n_theta(terms)}, got {start.shape}."
        )

    result = refit(y_arr, ws, start, lowerbd, maxiter=maxiter)

    model = FittedModel(
        X=X_arr,
        Z=Z,
        y=y_arr,
        beta=result.beta,
        sigma=result.sigma,
        theta=result.theta,
        terms=terms,
        reml=reml,
        fixed_names=tuple(names),
        converged=result.converged,
        objective=result.objective,
    )
    model.validate()
    return model


__all__ = ["FittedModel", "fit_lmm"]
