"""Random-effects design construction from grouping labels.

Builds the random-effect design matrix Z together with the ordered
:class:`~._terms.GroupingTerm` tuple that describes it.  For each
factor k with G_k groups and slope columns ``[c_1, …, c_s]`` the block
size is ``d_k = 1 + s`` and Z_k has ``G_k · d_k`` columns arranged
group-major::

    [group_0_intercept, group_0_slope_c1, …,
     group_1_intercept, group_1_slope_c1, …, …]

This layout is what makes Λ(θ) = I_{G_k} ⊗ T_k for every term.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Sequence

import numpy as np

from ._terms import GroupingTerm, make_terms

GroupsLike = np.ndarray | dict[str, "np.ndarray | tuple[np.ndarray, list[int]]"]


def build_random_effects_design(
    groups: GroupsLike,
    X: np.ndarray | None = None,
    random_slopes: list[int] | dict[str, list[int]] | None = None,
    *,
    correlated: bool | dict[str, bool] = True,
    slope_names: Sequence[str] | None = None,
) -> tuple[np.ndarray, tuple[GroupingTerm, ...]]:
    """Build the random-effect design matrix Z and its grouping terms.

    Args:
        groups: Grouping factor specification.
            * 1-D array ``(n,)`` of labels → single factor.
            * dict ``{name: array}`` → one factor per entry
              (intercept only unless *random_slopes* says otherwise).
            * dict ``{name: (array, slope_cols)}`` → factor with
              random slopes on the given columns of *X*.
        X: Fixed-effect design matrix ``(n, p)`` **without** an
            intercept column.  Required when slopes are requested.
        random_slopes: Slope columns (0-based indices into *X*).
            * ``None`` → intercept only for all factors.
            * ``list[int]`` → slopes for the single factor (only valid
              when *groups* is a 1-D array).
            * ``dict {name: list[int]}`` → slopes per factor (only
              valid when *groups* is a dict).
        correlated: Whether each factor's block carries correlations.
            A single bool applies to every factor; a dict sets it per
            factor name (missing names default to ``True``).
        slope_names: Column names of *X*, used to label slope
            coefficients.  Defaults to ``x0, x1, …``.

    Returns:
        ``(Z, terms)`` where ``Z`` is ``(n, q)`` with
        ``q = Σ_k G_k · d_k``.

    Raises:
        ValueError: If label arrays differ in length, groups is
            empty, or slopes are requested without X.
    """
    # Normalise (groups, random_slopes) into a list of factors
    factors: list[tuple[str, np.ndarray, list[int]]] = []

    if isinstance(groups, dict):
        if len(groups) == 0:
            raise ValueError("groups dict must contain at least one grouping factor.")
        if random_slopes is None:
            slopes_dict: dict[str, list[int]] = {}
        elif isinstance(random_slopes, dict):
            slopes_dict = random_slopes
        else:
            raise ValueError(
                "random_slopes must be a dict when groups is a dict, "
                f"got {type(random_slopes).__name__}."
            )

        for name, val in OrderedDict(groups).items():
            if isinstance(val, tuple):
                labels, slope_cols = val
                labels = np.asarray(labels)
            else:
                labels = np.asarray(val)
                slope_cols = slopes_dict.get(name, [])
            factors.append((str(name), labels, list(slope_cols)))
    else:
        labels = np.asarray(groups)
        if labels.ndim != 1:
            raise ValueError(
                f"groups must be a 1-D array or a dict, got shape {labels.shape}."
            )
        if random_slopes is None:
            slope_cols_single: list[int] = []
        elif isinstance(random_slopes, list):
            slope_cols_single = random_slopes
        else:
            raise ValueError(
                "random_slopes must be a list[int] when groups is a "
                f"1-D array, got {type(random_slopes).__name__}."
            )
        factors.append(("group", labels, slope_cols_single))

    has_slopes = any(len(sc) > 0 for _, _, sc in factors)
    if has_slopes and X is None:
        raise ValueError(
            "X must be provided when random_slopes is specified "
            "(needed to build slope columns of Z)."
        )
    if X is not None and slope_names is None:
        slope_names = [f"x{j}" for j in range(X.shape[1])]

    n: int | None = None
    Z_list: list[np.ndarray] = []
    specs: list[tuple[str, int, int, bool]] = []
    coef_names: list[list[str]] = []

    for name, labels, slope_cols in factors:
        if labels.ndim != 1:
            raise ValueError(
                f"Grouping factor '{name}' must be a 1-D array, "
                f"got shape {labels.shape}."
            )
        if n is None:
            n = len(labels)
        elif len(labels) != n:
            raise ValueError(
                f"Grouping factor '{name}' has {len(labels)} "
                f"observations, expected {n}."
            )
        if X is not None and X.shape[0] != len(labels):
            raise ValueError(
                f"Grouping factor '{name}' has {len(labels)} observations "
                f"but X has {X.shape[0]} rows."
            )

        # Map labels to 0-based contiguous integers
        _, coded = np.unique(labels, return_inverse=True)
        G_k = int(coded.max()) + 1 if len(coded) else 0
        d_k = 1 + len(slope_cols)

        Z_k = np.zeros((len(labels), G_k * d_k), dtype=np.float64)
        rows = np.arange(len(labels))
        col_base = coded * d_k
        Z_k[rows, col_base] = 1.0
        for s_idx, col_idx in enumerate(slope_cols):
            assert X is not None
            Z_k[rows, col_base + 1 + s_idx] = X[:, col_idx]

        Z_list.append(Z_k)
        if isinstance(correlated, dict):
            corr_k = bool(correlated.get(name, True))
        else:
            corr_k = bool(correlated)
        specs.append((name, G_k, d_k, corr_k))
        names_k = ["(Intercept)"]
        if slope_cols:
            assert slope_names is not None
            names_k += [str(slope_names[c]) for c in slope_cols]
        coef_names.append(names_k)

    Z = np.hstack(Z_list) if len(Z_list) > 1 else Z_list[0]
    return Z, make_terms(specs, coef_names)


__all__ = ["build_random_effects_design"]
