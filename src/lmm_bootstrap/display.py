"""Formatted ASCII table display for parametric-bootstrap samples.

The table mirrors the statsmodels summary style: a header panel with
the run metadata, then one row per parameter showing the original
estimate, the bootstrap mean and standard deviation, and the interval
bounds.  Variance components are reported on the standard-deviation
and correlation scale, the same scale :meth:`BootstrapSample.confint`
uses.
"""

from __future__ import annotations

import math
import textwrap
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from ._results import BootstrapSample


def _truncate(name: str, max_len: int) -> str:
    """Truncate *name* to *max_len*, appending ``'...'`` if needed."""
    if len(name) <= max_len:
        return name
    return name[: max_len - 3] + "..."


def _fmt(val: float, width: int = 10) -> str:
    """Right-align *val* with 4 decimals; ``nan`` renders as ``N/A``."""
    if val is None or (isinstance(val, float) and math.isnan(val)):
        return f"{'N/A':>{width}}"
    return f"{val:>{width}.4f}"


def _wrap(text: str, width: int = 80, indent: int = 2) -> str:
    """Word-wrap *text*, indenting only the continuation lines."""
    return textwrap.fill(
        text,
        width=width,
        initial_indent="",
        subsequent_indent=" " * indent,
    )


def print_bootstrap_table(
    sample: BootstrapSample,
    *,
    level: float = 0.95,
    method: str = "shortest",
    title: str = "Parametric Bootstrap Results",
) -> None:
    """Print a bootstrap sample in a formatted ASCII table.

    Args:
        sample: Result of :func:`~lmm_bootstrap.parametric_bootstrap`.
        level: Interval coverage level.
        method: ``"shortest"`` or ``"equaltail"``.
        title: Title for the output table.
    """
    ci = sample.confint(level=level, method=method)
    table = sample.to_dataframe()

    print("=" * 80)
    for line in textwrap.wrap(title, width=78):
        print(f"{line:^80}")
    print("=" * 80)

    col1 = 40
    col2 = 38
    criterion = "REML" if sample.reml else "ML"
    interval_label = "shortest" if method == "shortest" else "equal-tail"
    print(
        f"{'Criterion:':<16}{criterion:<{col1 - 16}}"
        f"{'Replicates:':>{col2 - 11}} {len(sample):>10}"
    )
    print(
        f"{'Interval:':<16}{interval_label:<{col1 - 16}}"
        f"{'Requested:':>{col2 - 11}} {sample.n_requested:>10}"
    )
    print(
        f"{'Level:':<16}{level:<{col1 - 16}}"
        f"{'Singular:':>{col2 - 11}} {sample.n_singular:>10}"
    )
    print(
        f"{'':<{col1}}"
        f"{'Non-converged:':>{col2 - 11}} {sample.n_nonconverged:>10}"
    )
    print("-" * 80)

    # ── Table geometry (W = 80 chars) ─────────────────────────── #
    #   Parameter (30, left) + 5 numeric columns of 10 = 80
    fc = 30
    print(
        f"{'Parameter':<{fc}}{'Estimate':>10}{'Boot Mean':>10}"
        f"{'Boot SD':>10}{'Lower':>10}{'Upper':>10}"
    )
    print("-" * 80)

    for row in ci.itertuples(index=False):
        draws = table[row.parameter].to_numpy(dtype=np.float64)
        finite = draws[~np.isnan(draws)]
        mean = float(finite.mean()) if finite.size else math.nan
        sd = float(finite.std(ddof=1)) if finite.size > 1 else math.nan
        print(
            f"{_truncate(row.parameter, fc - 1):<{fc}}{_fmt(row.estimate)}"
            f"{_fmt(mean)}{_fmt(sd)}{_fmt(row.lower)}{_fmt(row.upper)}"
        )

    # ── Notes ──────────────────────────────────────────────────── #
    notes: list[str] = []
    if not sample.complete:
        notes.append(
            f"Run stopped at its deadline: {len(sample)} of "
            f"{sample.n_requested} replicates were computed."
        )
    if sample.n_nonconverged:
        notes.append(
            f"{sample.n_nonconverged} refits did not converge; their "
            "best parameters are included."
        )
    if len(sample) and sample.n_singular:
        notes.append(
            f"{sample.proportion_singular:.1%} of replicates are singular "
            "(a variance component on its boundary). Correlations are "
            "undefined where a standard deviation is zero and are omitted "
            "from their intervals."
        )

    if notes:
        print("-" * 80)
        print("Notes")
        print("-" * 80)
        for note in notes:
            print(_wrap(f"  [!] {note}", width=80, indent=6))

    print("=" * 80)
    print()


__all__ = ["print_bootstrap_table"]
