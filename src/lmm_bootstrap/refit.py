"""Profiled-likelihood refit of a linear mixed model.

For a fixed covariance parameter θ the fixed effects β and the
residual scale σ have closed forms, so the likelihood is optimised
over θ alone (the *profiled* deviance).  At each θ the penalised
least-squares (PLS) problem

    min_{β, u}  ‖y − Xβ − ZΛ(θ)u‖² + ‖u‖²

is solved with two dense Cholesky factorisations:

    L L'     = Λ'Z'ZΛ + I                        (q × q)
    c_u      = L⁻¹ Λ'Z'y
    R_ZX     = L⁻¹ Λ'Z'X                          (q × p)
    R_X'R_X  = X'X − R_ZX'R_ZX                    (p × p)
    β̂(θ)    = (R_X'R_X)⁻¹ (X'y − R_ZX' c_u)
    r²(θ)    = y'y − c_u'c_u − β̂'(X'y − R_ZX' c_u)

giving the deviances

    ML:    log|L|² + n (1 + log(2π r² / n))
    REML:  log|L|² + log|R_X|² + (n − p)(1 + log(2π r² / (n − p)))

and σ̂² = r² / n (ML) or r² / (n − p) (REML).

Only X'X, Z'X and Z'Z are needed from the design, so they are formed
once per model and shared read-only by every replicate.  The Λ buffer
is per-task scratch: :meth:`ProfiledWorkspace.clone` hands each task
its own.

The optimiser is SciPy's L-BFGS-B with box constraints from the
θ lower bounds, warm-started from the original estimate.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace

import numpy as np
from scipy import linalg
from scipy.optimize import minimize
from typing_extensions import Self

from ._errors import DegenerateRefitError
from ._terms import GroupingTerm
from .transform import build_lambda

logger = logging.getLogger(__name__)

_DEFAULT_FTOL = 1e-10
_DEFAULT_GTOL = 1e-6
_DEFAULT_MAXITER = 200

# Start elements this close to a finite bound get a second, interior start.
_BOUNDARY_START_TOL = 1e-4
_INTERIOR_START = 1.0

_LOG_2PI = float(np.log(2.0 * np.pi))


# ------------------------------------------------------------------ #
# Workspace
# ------------------------------------------------------------------ #


@dataclass
class ProfiledWorkspace:
    """Cross-products of the design plus per-task scratch.

    ``X``, ``Z``, ``XtX``, ``ZtX`` and ``ZtZ`` are shared between
    clones and must be treated as read-only.  ``lambda_buf`` is
    overwritten on every deviance evaluation and is private to one
    clone.  ``replicate_index`` / ``attempt`` label the task for log
    and error messages.
    """

    X: np.ndarray
    Z: np.ndarray
    terms: tuple[GroupingTerm, ...]
    reml: bool
    XtX: np.ndarray
    ZtX: np.ndarray
    ZtZ: np.ndarray
    lambda_buf: np.ndarray
    replicate_index: int | None = None
    attempt: int = 0

    @classmethod
    def from_design(
        cls,
        X: np.ndarray,
        Z: np.ndarray,
        terms: Sequence[GroupingTerm],
        reml: bool = True,
    ) -> Self:
        X = np.asarray(X, dtype=np.float64)
        Z = np.asarray(Z, dtype=np.float64)
        q = Z.shape[1]
        return cls(
            X=X,
            Z=Z,
            terms=tuple(terms),
            reml=reml,
            XtX=X.T @ X,
            ZtX=Z.T @ X,
            ZtZ=Z.T @ Z,
            lambda_buf=np.zeros((q, q)),
        )

    @property
    def n_obs(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_fixed(self) -> int:
        return int(self.X.shape[1])

    def clone(self, replicate_index: int | None = None, attempt: int = 0) -> Self:
        """Copy with fresh scratch; the cross-products are shared."""
        return replace(
            self,
            lambda_buf=np.zeros_like(self.lambda_buf),
            replicate_index=replicate_index,
            attempt=attempt,
        )

    def describe(self) -> str:
        if self.replicate_index is None:
            return "refit"
        return f"replicate {self.replicate_index} (attempt {self.attempt})"


# ------------------------------------------------------------------ #
# Penalised least squares at fixed θ
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class PLSSolution:
    """Closed-form quantities at one θ."""

    beta: np.ndarray
    pwrss: float
    logdet_L: float
    logdet_RX: float
    RX: np.ndarray  # upper triangular, R_X'R_X = X'Ṽ⁻¹X
    objective: float


@dataclass(frozen=True)
class _ResponseProducts:
    Xty: np.ndarray
    Zty: np.ndarray
    yty: float


def _response_products(y: np.ndarray, ws: ProfiledWorkspace) -> _ResponseProducts:
    return _ResponseProducts(
        Xty=ws.X.T @ y,
        Zty=ws.Z.T @ y,
        yty=float(y @ y),
    )


def penalized_solve(
    theta: np.ndarray,
    ws: ProfiledWorkspace,
    products: _ResponseProducts,
) -> PLSSolution:
    """Solve the PLS problem at *theta* and evaluate the deviance.

    Raises:
        DegenerateRefitError: If θ is non-finite, a Cholesky factor is
            not positive definite, or the penalised residual sum of
            squares is not positive.
    """
    theta = np.asarray(theta, dtype=np.float64)
    if not np.all(np.isfinite(theta)):
        raise DegenerateRefitError(f"{ws.describe()}: non-finite θ {theta}.")

    Lam = build_lambda(theta, ws.terms, out=ws.lambda_buf)
    q = Lam.shape[0]

    M = Lam.T @ ws.ZtZ @ Lam
    M[np.diag_indices(q)] += 1.0
    try:
        L = linalg.cholesky(M, lower=True)
    except linalg.LinAlgError as exc:
        raise DegenerateRefitError(
            f"{ws.describe()}: Λ'Z'ZΛ + I is not positive definite."
        ) from exc

    cu = linalg.solve_triangular(L, Lam.T @ products.Zty, lower=True)
    RZX = linalg.solve_triangular(L, Lam.T @ ws.ZtX, lower=True)

    A = ws.XtX - RZX.T @ RZX
    try:
        RX = linalg.cholesky(A, lower=False)
    except linalg.LinAlgError as exc:
        raise DegenerateRefitError(
            f"{ws.describe()}: downdated X'X is not positive definite "
            "(fixed-effects design may be rank deficient)."
        ) from exc

    rhs = products.Xty - RZX.T @ cu
    beta = linalg.cho_solve((RX, False), rhs)
    pwrss = float(products.yty - cu @ cu - beta @ rhs)
    if not np.isfinite(pwrss) or pwrss <= 0.0:
        raise DegenerateRefitError(
            f"{ws.describe()}: penalised residual sum of squares is {pwrss}."
        )

    logdet_L = 2.0 * float(np.sum(np.log(np.diag(L))))
    logdet_RX = 2.0 * float(np.sum(np.log(np.diag(RX))))

    n, p = ws.n_obs, ws.n_fixed
    if ws.reml:
        nu = n - p
        objective = logdet_L + logdet_RX + nu * (1.0 + _LOG_2PI + np.log(pwrss / nu))
    else:
        objective = logdet_L + n * (1.0 + _LOG_2PI + np.log(pwrss / n))

    return PLSSolution(
        beta=beta,
        pwrss=pwrss,
        logdet_L=logdet_L,
        logdet_RX=logdet_RX,
        RX=RX,
        objective=float(objective),
    )


def profiled_deviance(theta: np.ndarray, ws: ProfiledWorkspace, y: np.ndarray) -> float:
    """Profiled ML/REML deviance of *y* at *theta*."""
    y = np.asarray(y, dtype=np.float64)
    return penalized_solve(theta, ws, _response_products(y, ws)).objective


# ------------------------------------------------------------------ #
# Refit
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RefitResult:
    """Estimates from one profiled optimisation."""

    beta: np.ndarray
    theta: np.ndarray
    sigma: float
    converged: bool
    objective: float
    se: np.ndarray
    n_iter: int
    message: str = ""


def _scale_divisor(ws: ProfiledWorkspace) -> int:
    return ws.n_obs - ws.n_fixed if ws.reml else ws.n_obs


def refit(
    y: np.ndarray,
    workspace: ProfiledWorkspace,
    theta_start: np.ndarray,
    lowerbd: np.ndarray,
    *,
    ftol: float = _DEFAULT_FTOL,
    gtol: float = _DEFAULT_GTOL,
    maxiter: int = _DEFAULT_MAXITER,
) -> RefitResult:
    """Re-estimate (β, θ, σ) for response *y*.

    Minimises the profiled deviance over θ subject to
    ``θ ≥ lowerbd`` (element-wise, unbounded where the bound is
    −∞), starting from *theta_start* clipped into the feasible set.
    Start elements on a finite bound get a second start one unit
    inside it, and the lower of the two optima is returned.

    Args:
        y: Response ``(n,)``.
        workspace: Design cross-products and scratch.  The Λ buffer
            is overwritten.
        theta_start: Warm start, usually the original estimate.
        lowerbd: Lower bounds for θ.
        ftol: L-BFGS-B relative reduction tolerance.
        gtol: L-BFGS-B projected-gradient tolerance.
        maxiter: L-BFGS-B iteration budget.

    Returns:
        A :class:`RefitResult`.  When the optimiser stops without
        meeting its tolerance, the best θ found is kept and
        ``converged`` is ``False``.

    Raises:
        ValueError: If *y* has the wrong shape.
        DegenerateRefitError: If *y* is non-finite or a factorisation
            breaks down.
    """
    y = np.asarray(y, dtype=np.float64)
    if y.shape != (workspace.n_obs,):
        raise ValueError(
            f"y must have shape ({workspace.n_obs},), got {y.shape}."
        )
    if not np.all(np.isfinite(y)):
        raise DegenerateRefitError(f"{workspace.describe()}: non-finite response.")

    lowerbd = np.asarray(lowerbd, dtype=np.float64)
    products = _response_products(y, workspace)

    def _objective(theta: np.ndarray) -> float:
        return penalized_solve(theta, workspace, products).objective

    bounds = [(float(lb) if np.isfinite(lb) else None, None) for lb in lowerbd]
    x0 = np.maximum(np.asarray(theta_start, dtype=np.float64), lowerbd)
    options = {"maxiter": maxiter, "ftol": ftol, "gtol": gtol}

    result = minimize(
        _objective, x0, method="L-BFGS-B", bounds=bounds, options=options
    )

    # The deviance is even in each diagonal θ element, so its gradient
    # vanishes on the boundary and a boundary start never moves.  Restart
    # from the interior and keep whichever optimum is lower.
    on_boundary = np.isfinite(lowerbd) & (x0 - lowerbd <= _BOUNDARY_START_TOL)
    if np.any(on_boundary):
        x1 = np.where(on_boundary, lowerbd + _INTERIOR_START, x0)
        interior = minimize(
            _objective, x1, method="L-BFGS-B", bounds=bounds, options=options
        )
        logger.debug(
            "%s: boundary start %.6g vs interior start %.6g",
            workspace.describe(),
            result.fun,
            interior.fun,
        )
        if interior.fun < result.fun:
            result = interior

    theta = np.maximum(np.asarray(result.x, dtype=np.float64), lowerbd)
    sol = penalized_solve(theta, workspace, products)
    sigma = float(np.sqrt(sol.pwrss / _scale_divisor(workspace)))

    # diag((R_X'R_X)⁻¹) = squared row norms of R_X⁻¹
    RX_inv = linalg.solve_triangular(sol.RX, np.eye(workspace.n_fixed), lower=False)
    se = sigma * np.sqrt(np.sum(RX_inv**2, axis=1))

    converged = bool(result.success)
    if not converged:
        logger.debug(
            "%s: optimiser stopped after %d iterations without converging: %s",
            workspace.describe(),
            result.nit,
            result.message,
        )

    return RefitResult(
        beta=sol.beta,
        theta=theta,
        sigma=sigma,
        converged=converged,
        objective=sol.objective,
        se=se,
        n_iter=int(result.nit),
        message=str(result.message),
    )


__all__ = [
    "PLSSolution",
    "ProfiledWorkspace",
    "RefitResult",
    "penalized_solve",
    "profiled_deviance",
    "refit",
]
