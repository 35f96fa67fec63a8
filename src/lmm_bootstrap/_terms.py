"""Grouping-term descriptors and the θ layout they imply.

Each random-effects grouping factor k contributes one block to the
relative covariance factor Λ(θ):

    Λ = block_diag( I_{G_1} ⊗ T_1, …, I_{G_K} ⊗ T_K )

where G_k is the number of levels of factor k and T_k is a
(d_k × d_k) lower-triangular matrix.  θ is the concatenation of the
free elements of every T_k:

* **correlated** terms store the full lower triangle in column-major
  order: for d = 2, θ_k = [T₁₁, T₂₁, T₂₂];
* **uncorrelated** terms store only the diagonal.

Diagonal elements are bounded below by 0, off-diagonal elements are
unbounded.  The descriptors are a flat, ordered tuple with explicit
offsets so every consumer (simulator, refit, transform, singularity
check) can iterate them uniformly regardless of block size.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class GroupingTerm:
    """One random-effects grouping factor.

    Attributes:
        name: Factor label (e.g. ``"subject"``).
        n_levels: Number of groups G.
        dim: Block size d (1 = intercept only).
        correlated: Whether the block carries off-diagonal elements.
        coef_names: Label for each of the d random-effect columns.
        theta_offset: Position of this term's first element in θ.
        re_offset: Position of this term's first column in Z.
    """

    name: str
    n_levels: int
    dim: int
    correlated: bool = True
    coef_names: tuple[str, ...] = ()
    theta_offset: int = 0
    re_offset: int = 0

    @property
    def n_theta(self) -> int:
        d = self.dim
        return d * (d + 1) // 2 if self.correlated else d

    @property
    def n_random(self) -> int:
        return self.n_levels * self.dim

    @property
    def labels(self) -> tuple[str, ...]:
        """Coefficient labels, defaulting to ``(Intercept), slope1, …``."""
        if self.coef_names:
            return self.coef_names
        return tuple("(Intercept)" if i == 0 else f"slope{i}" for i in range(self.dim))

    @property
    def theta_slice(self) -> slice:
        return slice(self.theta_offset, self.theta_offset + self.n_theta)

    @property
    def re_slice(self) -> slice:
        return slice(self.re_offset, self.re_offset + self.n_random)

    def diagonal_mask(self) -> np.ndarray:
        """Boolean mask over this term's θ block marking diagonal elements."""
        if not self.correlated:
            return np.ones(self.dim, dtype=bool)
        mask = np.zeros(self.n_theta, dtype=bool)
        idx = 0
        for j in range(self.dim):
            # Column j starts at its diagonal element.
            mask[idx] = True
            idx += self.dim - j
        return mask


def make_terms(
    specs: Sequence[tuple[str, int, int] | tuple[str, int, int, bool]],
    coef_names: Sequence[Sequence[str]] | None = None,
) -> tuple[GroupingTerm, ...]:
    """Build a contiguous term tuple from ``(name, n_levels, dim[, correlated])``.

    Offsets into θ and into the columns of Z are assigned in order.
    """
    terms: list[GroupingTerm] = []
    theta_off = 0
    re_off = 0
    for k, spec in enumerate(specs):
        name, n_levels, dim = spec[0], int(spec[1]), int(spec[2])
        correlated = bool(spec[3]) if len(spec) > 3 else True  # type: ignore[misc]
        names = tuple(coef_names[k]) if coef_names is not None else ()
        term = GroupingTerm(
            name=str(name),
            n_levels=n_levels,
            dim=dim,
            correlated=correlated,
            coef_names=names,
            theta_offset=theta_off,
            re_offset=re_off,
        )
        terms.append(term)
        theta_off += term.n_theta
        re_off += term.n_random
    return tuple(terms)


def n_theta(terms: Sequence[GroupingTerm]) -> int:
    return sum(t.n_theta for t in terms)


def n_random(terms: Sequence[GroupingTerm]) -> int:
    return sum(t.n_random for t in terms)


def theta_lower_bounds(terms: Sequence[GroupingTerm]) -> np.ndarray:
    """Lower-bound vector for θ: 0 on diagonals, −∞ elsewhere."""
    lb = np.full(n_theta(terms), -np.inf)
    for term in terms:
        block = lb[term.theta_slice]
        block[term.diagonal_mask()] = 0.0
    return lb


def default_theta(terms: Sequence[GroupingTerm]) -> np.ndarray:
    """Starting θ for a fresh fit: identity blocks (1 on diagonals)."""
    theta = np.zeros(n_theta(terms))
    for term in terms:
        block = theta[term.theta_slice]
        block[term.diagonal_mask()] = 1.0
    return theta


def validate_terms(
    terms: Sequence[GroupingTerm],
    n_theta_expected: int,
    n_random_expected: int,
) -> None:
    """Check that *terms* tile θ and the columns of Z exactly.

    Raises:
        ValueError: On an empty term list, non-positive sizes,
            non-contiguous offsets, duplicate names, or totals that do
            not match the expected θ length / Z width.
    """
    if len(terms) == 0:
        raise ValueError("At least one grouping term is required.")

    theta_off = 0
    re_off = 0
    seen: set[str] = set()
    for term in terms:
        if term.name in seen:
            raise ValueError(f"Duplicate grouping term name '{term.name}'.")
        seen.add(term.name)
        if term.n_levels < 1 or term.dim < 1:
            raise ValueError(
                f"Grouping term '{term.name}' must have n_levels >= 1 and "
                f"dim >= 1, got n_levels={term.n_levels}, dim={term.dim}."
            )
        if term.coef_names and len(term.coef_names) != term.dim:
            raise ValueError(
                f"Grouping term '{term.name}' has {len(term.coef_names)} "
                f"coefficient names for a block of size {term.dim}."
            )
        if term.theta_offset != theta_off or term.re_offset != re_off:
            raise ValueError(
                f"Grouping term '{term.name}' has offsets "
                f"(theta={term.theta_offset}, re={term.re_offset}), "
                f"expected (theta={theta_off}, re={re_off})."
            )
        theta_off += term.n_theta
        re_off += term.n_random

    if theta_off != n_theta_expected:
        raise ValueError(
            f"Grouping terms describe {theta_off} θ elements, "
            f"but θ has length {n_theta_expected}."
        )
    if re_off != n_random_expected:
        raise ValueError(
            f"Grouping terms describe {re_off} random-effect columns, "
            f"but Z has {n_random_expected}."
        )


__all__ = [
    "GroupingTerm",
    "default_theta",
    "make_terms",
    "n_random",
    "n_theta",
    "theta_lower_bounds",
    "validate_terms",
]
