"""Run context: mutable accumulator for scheduler artifacts.

A :class:`BootstrapContext` is created by the
:class:`~.engine.BootstrapEngine`, filled in while replicates run,
and attached to the finished :class:`~._results.BootstrapSample` so
callers can inspect how the run went (seed entropy, redraws, skipped
work, timing) without re-running it.

The context is **not** part of the serialised result:
:meth:`~._results.BootstrapSample.to_dict` skips it.

Lifecycle::

    ┌──────────────────────────────────────────────┐
    │  BootstrapEngine(model, n, …)                │
    │  └─ run()                                    │
    │      ├─ ctx = BootstrapContext(seed_entropy) │
    │      ├─ replicates computed (no ctx access)  │
    │      ├─ ctx.retries / ctx.skipped collected  │
    │      ├─ ctx.elapsed_seconds = …              │
    │      └─ BootstrapSample(…, context=ctx)      │
    └──────────────────────────────────────────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class BootstrapContext:
    """Mutable accumulator for one bootstrap run.

    Every field has a default so the context can be created before
    any replicate runs and populated incrementally.
    """

    # ---- Run configuration ---------------------------------------
    n_requested: int | None = None
    """Number of replicates asked for."""

    n_jobs: int = 1
    """Worker count passed to joblib (1 = sequential loop)."""

    failure_policy: str | None = None
    """``"redraw"`` or ``"abort"``."""

    max_retries: int | None = None
    """Redraw budget per replicate."""

    timeout: float | None = None
    """Overall deadline in seconds, or ``None``."""

    seed_entropy: int | None = None
    """Entropy of the base seed sequence (replays the run when reused)."""

    # ---- Per-replicate bookkeeping -------------------------------
    retries: dict[int, int] = field(default_factory=dict)
    """Replicate index → number of redraws needed (only non-zero entries)."""

    skipped: list[int] = field(default_factory=list)
    """Indices not started because the deadline had passed."""

    # ---- Outcome -------------------------------------------------
    timed_out: bool = False
    """Whether the deadline cut the run short."""

    elapsed_seconds: float | None = None
    """Wall-clock duration of :meth:`~.engine.BootstrapEngine.run`."""

    warnings_captured: list[str] = field(default_factory=list)
    """User-facing warning messages emitted during the run."""

    @property
    def total_retries(self) -> int:
        return sum(self.retries.values())


__all__ = ["BootstrapContext"]
