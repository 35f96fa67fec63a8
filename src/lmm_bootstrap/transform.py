"""Parameter transform: flat θ → block covariance quantities.

The optimiser works on θ, the minimal parameterisation of the
relative covariance factor.  Users read the random-effects covariance
on the natural scale instead:

    Σ_k = σ² T_k T_k'

so that, for grouping term k,

    sd_i   = σ · ‖row_i(T_k)‖
    ρ_ij   = Σ_k[i, j] / (sd_i · sd_j)
           = ⟨row_i(T_k), row_j(T_k)⟩ / (‖row_i‖ · ‖row_j‖)

Two derived views are provided, mirroring the usual ``VarCorr``
display of a mixed model:

* :func:`sigmas`: per-term vector of standard deviations.
* :func:`sigma_rhos`: per-term :class:`SigmaRho` pair of standard
  deviations and correlations.

Zero standard deviations
------------------------
At the boundary of the parameter space (a row of T_k equal to zero)
the affected correlations are 0/0.  They are reported as ``nan``
rather than raised, because bootstrap replicates land on that
boundary routinely.  Finite correlations are clamped to [−1, 1] to
absorb floating-point overshoot.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import NamedTuple

import numpy as np

from ._terms import GroupingTerm, n_random


class SigmaRho(NamedTuple):
    """Standard deviations and correlations of one grouping term.

    ``rho`` holds the strictly-lower-triangular correlations in row
    order (ρ₂₁, ρ₃₁, ρ₃₂, …): a single value for a 2-dimensional
    term and an empty array for a scalar term.
    """

    sigma: np.ndarray
    rho: np.ndarray

    @property
    def corr(self) -> np.ndarray:
        """Full correlation matrix rebuilt from :attr:`rho`."""
        d = len(self.sigma)
        C = np.eye(d)
        rows, cols = np.tril_indices(d, k=-1)
        C[rows, cols] = self.rho
        C[cols, rows] = self.rho
        # An undefined correlation leaves the whole row undefined.
        C[np.diag_indices(d)] = np.where(self.sigma > 0, 1.0, np.nan)
        return C


# ------------------------------------------------------------------ #
# θ → T_k
# ------------------------------------------------------------------ #


def theta_block(theta: np.ndarray, term: GroupingTerm) -> np.ndarray:
    """Return the lower-triangular factor T_k of one grouping term."""
    values = np.asarray(theta, dtype=np.float64)[term.theta_slice]
    d = term.dim
    if not term.correlated:
        return np.diag(values)
    T = np.zeros((d, d))
    # Column-major lower triangle: (0,0), (1,0), …, (d-1,0), (1,1), …
    cols, rows = np.triu_indices(d)
    T[rows, cols] = values
    return T


def theta_to_blocks(
    theta: np.ndarray,
    terms: Sequence[GroupingTerm],
) -> dict[str, np.ndarray]:
    """Map θ to ``{term name: T_k}``."""
    return {term.name: theta_block(theta, term) for term in terms}


def build_lambda(
    theta: np.ndarray,
    terms: Sequence[GroupingTerm],
    out: np.ndarray | None = None,
) -> np.ndarray:
    """Assemble the dense relative covariance factor Λ(θ).

    Λ is block diagonal with ``I_{G_k} ⊗ T_k`` for each term, which
    matches the group-major column layout of Z.

    Args:
        theta: Flat covariance parameter.
        terms: Grouping-term descriptors.
        out: Optional ``(q, q)`` buffer to fill in place.  Only the
            diagonal blocks are written; off-block entries must
            already be zero.

    Returns:
        The ``(q, q)`` factor (``out`` itself when given).
    """
    q = n_random(terms)
    if out is None:
        out = np.zeros((q, q))
    for term in terms:
        T = theta_block(theta, term)
        d = term.dim
        start = term.re_offset
        for g in range(term.n_levels):
            lo = start + g * d
            out[lo : lo + d, lo : lo + d] = T
    return out


# ------------------------------------------------------------------ #
# Derived views
# ------------------------------------------------------------------ #


def _row_norms(T: np.ndarray) -> np.ndarray:
    return np.sqrt(np.einsum("ij,ij->i", T, T))


def _correlations(T: np.ndarray) -> np.ndarray:
    """Correlation matrix implied by T T', ``nan`` where undefined."""
    norms = _row_norms(T)
    gram = T @ T.T
    with np.errstate(divide="ignore", invalid="ignore"):
        C = gram / np.outer(norms, norms)
    C[~np.isfinite(C)] = np.nan
    return np.clip(C, -1.0, 1.0)  # nan passes through clip unchanged


def sigmas(
    theta: np.ndarray,
    sigma: float,
    terms: Sequence[GroupingTerm],
) -> dict[str, np.ndarray]:
    """Per-term standard deviations ``σ · row-norms(T_k)``."""
    return {
        term.name: sigma * _row_norms(theta_block(theta, term)) for term in terms
    }


def sigma_rhos(
    theta: np.ndarray,
    sigma: float,
    terms: Sequence[GroupingTerm],
) -> dict[str, SigmaRho]:
    """Per-term standard deviations and correlations.

    A scalar (d = 1) term yields an empty ``rho``.
    """
    result: dict[str, SigmaRho] = {}
    for term in terms:
        T = theta_block(theta, term)
        sd = sigma * _row_norms(T)
        if term.dim == 1:
            rho = np.empty(0)
        else:
            rows, cols = np.tril_indices(term.dim, k=-1)
            rho = _correlations(T)[rows, cols]
        result[term.name] = SigmaRho(sigma=sd, rho=rho)
    return result


def block_covariance(
    theta: np.ndarray,
    sigma: float,
    term: GroupingTerm,
) -> np.ndarray:
    """Covariance of one group's random effects, ``σ² T_k T_k'``."""
    T = theta_block(theta, term)
    return sigma**2 * (T @ T.T)


def covariance_from_sigma_rho(sr: SigmaRho) -> np.ndarray:
    """Rebuild ``diag(sd) · C · diag(sd)`` from a :class:`SigmaRho`.

    Undefined correlations only ever multiply a zero standard
    deviation, so they are treated as 0 here.
    """
    C = np.nan_to_num(sr.corr, nan=0.0)
    return C * np.outer(sr.sigma, sr.sigma)


__all__ = [
    "SigmaRho",
    "block_covariance",
    "build_lambda",
    "covariance_from_sigma_rho",
    "sigma_rhos",
    "sigmas",
    "theta_block",
    "theta_to_blocks",
]
