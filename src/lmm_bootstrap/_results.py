"""Typed result objects for parametric-bootstrap runs.

Frozen dataclasses that provide:

* **Attribute access**: ``sample.sigma``, ``replicate.theta``, etc.
* **Dict-like access**: ``sample["sigma"]``, ``sample.get("key")``,
  ``"key" in sample`` for consumers that prefer bracket syntax.
* **Serialisation**: ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python.

:class:`Replicate` is one bootstrap draw; :class:`BootstrapSample` is
the ordered collection produced by one run.  Every covariance-scale
quantity on the sample (``sigmas``, ``sigmarhos``, singular flags,
the tabular view) is recomputed from the stored θ* on access, so
there is no cached state that could drift from the draws.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import asdict, dataclass, fields
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np
import pandas as pd

from ._terms import GroupingTerm
from .intervals import INTERVAL_METHODS
from .singularity import DEFAULT_SINGULAR_TOL, singular_flags
from .transform import SigmaRho, sigma_rhos, sigmas

if TYPE_CHECKING:
    from ._context import BootstrapContext

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


def _frozen_array(values: Any) -> np.ndarray:
    """Private read-only float64 copy of *values*."""
    arr = np.array(values, dtype=np.float64)
    arr.setflags(write=False)
    return arr


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Subclasses may override ``_SERIALIZERS`` to register conversion
    functions for non-primitive fields.  Serializers compose with
    :func:`_numpy_to_python`.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {}

    # Fields to exclude from to_dict() serialisation.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"context"})

    def __getitem__(self, key: Any) -> Any:
        """Attribute lookup via bracket syntax."""
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        """Attribute lookup with a fallback default."""
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary of Python-native values."""
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


# ------------------------------------------------------------------ #
# Replicate
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class Replicate(_DictAccessMixin):
    """One simulate-and-refit draw."""

    index: int
    """0-based replicate index (fixes the random substream)."""

    beta: np.ndarray
    """Fixed-effect estimates β* ``(p,)``."""

    sigma: float
    """Residual standard deviation σ*."""

    theta: np.ndarray
    """Covariance parameter θ* ``(k,)``."""

    converged: bool
    """Whether the optimiser met its tolerance."""

    objective: float = float("nan")
    """Profiled deviance at θ*."""

    se: np.ndarray | None = None
    """Standard errors of β*."""

    n_iter: int = 0
    """Optimiser iterations used."""

    n_retries: int = 0
    """Redraws needed before the refit succeeded."""

    def __post_init__(self) -> None:
        object.__setattr__(self, "beta", _frozen_array(self.beta))
        object.__setattr__(self, "theta", _frozen_array(self.theta))
        if self.se is not None:
            object.__setattr__(self, "se", _frozen_array(self.se))


# ------------------------------------------------------------------ #
# BootstrapSample
# ------------------------------------------------------------------ #


def _parameter_columns(
    terms: tuple[GroupingTerm, ...],
    fixed_names: tuple[str, ...],
    n_theta: int,
) -> tuple[list[str], list[str], list[str]]:
    """Column labels for (β, σ/ρ, θ) in the tabular view."""
    beta_cols = list(fixed_names)
    cov_cols = ["sigma"]
    for term in terms:
        cov_cols += [f"sigma_{term.name}_{c}" for c in term.labels]
    for term in terms:
        rows, cols = np.tril_indices(term.dim, k=-1)
        cov_cols += [
            f"rho_{term.name}_{term.labels[i]}_{term.labels[j]}"
            for i, j in zip(rows, cols, strict=True)
        ]
    theta_cols = [f"theta{k + 1}" for k in range(n_theta)]
    return beta_cols, cov_cols, theta_cols


def _parameter_row(
    beta: np.ndarray,
    sigma: float,
    theta: np.ndarray,
    terms: tuple[GroupingTerm, ...],
) -> list[float]:
    row = [float(b) for b in beta]
    row.append(float(sigma))
    sr = sigma_rhos(theta, sigma, terms)
    for term in terms:
        row += [float(s) for s in sr[term.name].sigma]
    for term in terms:
        row += [float(r) for r in sr[term.name].rho]
    row += [float(t) for t in theta]
    return row


@dataclass(frozen=True)
class BootstrapSample(_DictAccessMixin):
    """Ordered parametric-bootstrap draws from one fitted model.

    ``len(sample) == n_requested`` whenever ``complete`` is ``True``.
    A run cut short by its deadline returns the replicates that did
    run, still ordered by index, with ``complete=False``.

    Integer indexing returns a :class:`Replicate`
    (``sample[3]``); string indexing returns an attribute
    (``sample["sigma"]``).

    Array fields here and on every :class:`Replicate` are read-only
    copies of what was passed in.
    """

    replicates: tuple[Replicate, ...]
    """Draws ordered by replicate index."""

    terms: tuple[GroupingTerm, ...]
    """Grouping-term descriptors needed to interpret θ*."""

    lowerbd: np.ndarray
    """Lower bounds of θ from the originating model."""

    fixed_names: tuple[str, ...]
    """Labels of the fixed effects."""

    n_requested: int
    """Number of replicates asked for."""

    original_beta: np.ndarray
    """β̂ of the originating model."""

    original_sigma: float
    """σ̂ of the originating model."""

    original_theta: np.ndarray
    """θ̂ of the originating model."""

    reml: bool = True
    """Estimation criterion shared by the original fit and every refit."""

    complete: bool = True
    """``False`` when a deadline stopped the run early."""

    singular_tol: float = DEFAULT_SINGULAR_TOL
    """Default tolerance for :attr:`singular`."""

    context: BootstrapContext | None = None
    """Run artifacts (excluded from :meth:`to_dict`)."""

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "replicates": lambda reps: [r.to_dict() for r in reps],
        "terms": lambda terms: [asdict(t) for t in terms],
    }

    def __post_init__(self) -> None:
        for name in ("lowerbd", "original_beta", "original_theta"):
            object.__setattr__(self, name, _frozen_array(getattr(self, name)))
        object.__setattr__(self, "replicates", tuple(self.replicates))

    # ---- Sequence protocol -----------------------------------------

    def __len__(self) -> int:
        return len(self.replicates)

    def __iter__(self) -> Iterator[Replicate]:
        return iter(self.replicates)

    def __getitem__(self, key: Any) -> Any:
        if isinstance(key, (int, np.integer)) and not isinstance(key, bool):
            return self.replicates[key]
        return super().__getitem__(key)

    # ---- Stacked draws ---------------------------------------------

    @property
    def indices(self) -> np.ndarray:
        return np.array([r.index for r in self.replicates], dtype=np.intp)

    @property
    def beta(self) -> np.ndarray:
        """β* draws, shape ``(n, p)``."""
        p = len(self.original_beta)
        if not self.replicates:
            return np.empty((0, p))
        return np.vstack([r.beta for r in self.replicates])

    @property
    def sigma(self) -> np.ndarray:
        """σ* draws, shape ``(n,)``."""
        return np.array([r.sigma for r in self.replicates], dtype=np.float64)

    @property
    def theta(self) -> np.ndarray:
        """θ* draws, shape ``(n, k)``."""
        k = len(self.original_theta)
        if not self.replicates:
            return np.empty((0, k))
        return np.vstack([r.theta for r in self.replicates])

    @property
    def se(self) -> np.ndarray:
        """Standard errors of β*, shape ``(n, p)`` (``nan`` when absent)."""
        p = len(self.original_beta)
        rows = [
            r.se if r.se is not None else np.full(p, np.nan) for r in self.replicates
        ]
        return np.vstack(rows) if rows else np.empty((0, p))

    @property
    def objective(self) -> np.ndarray:
        return np.array([r.objective for r in self.replicates], dtype=np.float64)

    @property
    def converged(self) -> np.ndarray:
        return np.array([r.converged for r in self.replicates], dtype=bool)

    @property
    def n_nonconverged(self) -> int:
        return int(np.sum(~self.converged))

    # ---- Derived covariance views ------------------------------------

    @property
    def sigmas(self) -> list[dict[str, np.ndarray]]:
        """Per replicate, ``{term name: standard deviations}``."""
        return [sigmas(r.theta, r.sigma, self.terms) for r in self.replicates]

    @property
    def sigmarhos(self) -> list[dict[str, SigmaRho]]:
        """Per replicate, ``{term name: SigmaRho(sigma, rho)}``."""
        return [sigma_rhos(r.theta, r.sigma, self.terms) for r in self.replicates]

    # ---- Singularity -----------------------------------------------

    def issingular(self, tol: float | None = None) -> np.ndarray:
        """Boolean flag per replicate: θ* on (or within *tol* of) its bounds."""
        tol = self.singular_tol if tol is None else tol
        return singular_flags((r.theta for r in self.replicates), self.lowerbd, tol)

    @property
    def singular(self) -> np.ndarray:
        return self.issingular()

    @property
    def n_singular(self) -> int:
        return int(np.sum(self.singular))

    @property
    def proportion_singular(self) -> float:
        if not self.replicates:
            return float("nan")
        return self.n_singular / len(self.replicates)

    # ---- Tabular views ---------------------------------------------

    def parameter_names(self) -> list[str]:
        """Labels for β, σ, per-term σ and ρ, and θ, in table order."""
        beta_cols, cov_cols, theta_cols = _parameter_columns(
            self.terms, self.fixed_names, len(self.original_theta)
        )
        return beta_cols + cov_cols + theta_cols

    def estimates(self) -> pd.Series:
        """Original-fit values for every column of :meth:`parameter_names`."""
        return pd.Series(
            _parameter_row(
                self.original_beta,
                self.original_sigma,
                self.original_theta,
                self.terms,
            ),
            index=self.parameter_names(),
            dtype=np.float64,
        )

    def to_dataframe(self) -> pd.DataFrame:
        """One row per replicate.

        Columns: ``index``, ``objective``, the parameters of
        :meth:`parameter_names`, ``converged`` and ``singular``.
        """
        names = self.parameter_names()
        rows = [
            _parameter_row(r.beta, r.sigma, r.theta, self.terms)
            for r in self.replicates
        ]
        frame = pd.DataFrame(rows, columns=names, dtype=np.float64)
        frame.insert(0, "objective", self.objective)
        frame.insert(0, "index", self.indices)
        frame["converged"] = self.converged
        frame["singular"] = self.singular
        return frame

    def confint(self, level: float = 0.95, method: str = "shortest") -> pd.DataFrame:
        """Bootstrap intervals for β, σ and the per-term σ/ρ.

        Args:
            level: Coverage level in (0, 1).
            method: ``"shortest"`` (shortest coverage interval) or
                ``"equaltail"`` (percentile interval).

        Returns:
            DataFrame with columns ``parameter``, ``estimate``,
            ``lower`` and ``upper``.
        """
        try:
            interval = INTERVAL_METHODS[method]
        except KeyError:
            raise ValueError(
                f"Unknown interval method '{method}'. "
                f"Choose from: {sorted(INTERVAL_METHODS)}"
            ) from None

        beta_cols, cov_cols, _ = _parameter_columns(
            self.terms, self.fixed_names, len(self.original_theta)
        )
        table = self.to_dataframe()
        estimates = self.estimates()
        records = []
        for name in beta_cols + cov_cols:
            lo, hi = interval(table[name].to_numpy(), level)
            records.append(
                {
                    "parameter": name,
                    "estimate": float(estimates[name]),
                    "lower": lo,
                    "upper": hi,
                }
            )
        return pd.DataFrame.from_records(
            records, columns=["parameter", "estimate", "lower", "upper"]
        )


__all__ = ["BootstrapSample", "Replicate"]
