"""Bootstrap engine: validation, replicate scheduling, and assembly.

The :class:`BootstrapEngine` centralises everything around the
per-replicate pipeline:

1. **Input validation**: replicate count, policies, tolerances and
   the :class:`~.model.FittedModel` contract are all checked at
   construction, before any work starts.
2. **Policy resolution**: failure policy and retry budget fall back
   to :mod:`._config` when not given explicitly.
3. **Seeding**: one base ``SeedSequence``; replicate i always draws
   from ``substream(base, i)``.
4. **Scheduling**: a plain loop for ``n_jobs == 1``, otherwise
   ``joblib.Parallel(prefer="threads")``.  joblib returns results in
   submission order, and each replicate's draws depend only on its
   index, so sequential and parallel runs are identical.
5. **Assembly**: replicates are packed into an immutable
   :class:`~._results.BootstrapSample` with a
   :class:`~._context.BootstrapContext` describing the run.

Per-replicate pipeline
~~~~~~~~~~~~~~~~~~~~~~
::

    rng = substream(base, i)
    ws  = template_workspace.clone()         # private Λ scratch
    repeat up to 1 + max_retries times:
        y* = simulate_response(rng, β̂, σ̂, θ̂, X, Z, terms)
        refit(y*, ws, θ̂, lowerbd)             # warm start at θ̂
          ├─ ok              → Replicate(i, …, n_retries=attempt)
          └─ degenerate      → "abort": raise  /  "redraw": next y*

Redraws keep consuming the same substream, so which draw finally
succeeds is itself reproducible.

Workers are threads.  The design cross-products are shared by
reference; only the Λ scratch buffer is per task.
"""

from __future__ import annotations

import logging
import time
import warnings

from joblib import Parallel, delayed
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from ._config import get_failure_policy, get_max_retries
from ._context import BootstrapContext
from ._errors import BootstrapAbortedError, DegenerateRefitError
from ._results import BootstrapSample, Replicate
from ._typing import RandomStateLike
from .model import FittedModel
from .refit import _DEFAULT_FTOL, _DEFAULT_GTOL, _DEFAULT_MAXITER, refit
from .simulate import seed_sequence, simulate_response, substream
from .singularity import DEFAULT_SINGULAR_TOL

logger = logging.getLogger(__name__)

_VALID_POLICIES = ("redraw", "abort")


class BootstrapEngine:
    """Parametric bootstrap of a fitted linear mixed model.

    Construct an engine, then call :meth:`run`.  The engine holds no
    per-run mutable state other than the :attr:`ctx` of the most
    recent run, so :meth:`run` may be called repeatedly and returns
    the same draws each time.

    Attributes:
        model: The fitted model being resampled (never mutated).
        n_replicates: Number of replicates requested.
        base_seed: Base ``SeedSequence`` all substreams derive from.
        failure_policy: ``"redraw"`` or ``"abort"``.
        max_retries: Redraws allowed per replicate.
        n_jobs: joblib worker count (1 = sequential loop).
        timeout: Overall deadline in seconds, or ``None``.
        ctx: Context of the most recent :meth:`run`.
    """

    def __init__(
        self,
        model: FittedModel,
        n_replicates: int,
        random_state: RandomStateLike = None,
        *,
        n_jobs: int = 1,
        failure_policy: str | None = None,
        max_retries: int | None = None,
        timeout: float | None = None,
        singular_tol: float = DEFAULT_SINGULAR_TOL,
        ftol: float = _DEFAULT_FTOL,
        gtol: float = _DEFAULT_GTOL,
        maxiter: int = _DEFAULT_MAXITER,
    ) -> None:
        # ---- Scalar arguments -------------------------------------
        if isinstance(n_replicates, bool) or not isinstance(n_replicates, int):
            raise ValueError(
                f"n_replicates must be an integer, got {type(n_replicates).__name__}."
            )
        if n_replicates < 1:
            raise ValueError(f"n_replicates must be >= 1, got {n_replicates}.")
        if isinstance(n_jobs, bool) or not isinstance(n_jobs, int) or n_jobs == 0:
            raise ValueError(
                f"n_jobs must be a non-zero integer (-1 = all cores), got {n_jobs!r}."
            )
        if timeout is not None and not timeout > 0:
            raise ValueError(f"timeout must be positive seconds, got {timeout}.")
        if singular_tol < 0:
            raise ValueError(f"singular_tol must be non-negative, got {singular_tol}.")
        if maxiter < 1:
            raise ValueError(f"maxiter must be >= 1, got {maxiter}.")

        # ---- Policy resolution ------------------------------------
        policy = get_failure_policy() if failure_policy is None else failure_policy
        policy = policy.strip().lower()
        if policy not in _VALID_POLICIES:
            raise ValueError(
                f"Unknown failure policy '{failure_policy}'. "
                f"Choose from: {list(_VALID_POLICIES)}"
            )
        retries = get_max_retries() if max_retries is None else max_retries
        if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
            raise ValueError(
                f"max_retries must be a non-negative integer, got {retries!r}."
            )

        # ---- Model contract ---------------------------------------
        if not isinstance(model, FittedModel):
            raise ValueError(
                f"model must be a FittedModel, got {type(model).__name__}."
            )
        model.validate()

        self.model = model
        self.n_replicates = n_replicates
        self.base_seed = seed_sequence(random_state)
        self.failure_policy = policy
        self.max_retries = retries
        self.n_jobs = n_jobs
        self.timeout = timeout
        self.singular_tol = singular_tol
        self._optimizer_options = {"ftol": ftol, "gtol": gtol, "maxiter": maxiter}

        # Cross-products are formed once here; every task clones this.
        self._template = model.workspace()
        self._lowerbd = model.lowerbd

        self.ctx = self._new_context()

    def _new_context(self) -> BootstrapContext:
        return BootstrapContext(
            n_requested=self.n_replicates,
            n_jobs=self.n_jobs,
            failure_policy=self.failure_policy,
            max_retries=self.max_retries,
            timeout=self.timeout,
            seed_entropy=self.base_seed.entropy,  # type: ignore[arg-type]
        )

    # ---- Per-replicate task ----------------------------------------

    def _run_replicate(self, index: int, deadline: float | None) -> Replicate | None:
        """Simulate and refit replicate *index*.

        Returns ``None`` if the deadline passed before the task
        started.  A started task always runs to completion.
        """
        if deadline is not None and time.perf_counter() >= deadline:
            return None

        m = self.model
        rng = substream(self.base_seed, index)
        ws = self._template.clone(replicate_index=index)
        last_exc: DegenerateRefitError | None = None

        for attempt in range(self.max_retries + 1):
            ws.attempt = attempt
            y_star = simulate_response(rng, m.beta, m.sigma, m.theta, m.X, m.Z, m.terms)
            try:
                result = refit(y_star, ws, m.theta, self._lowerbd, **self._optimizer_options)
            except DegenerateRefitError as exc:
                if self.failure_policy == "abort":
                    raise BootstrapAbortedError(
                        "degenerate",
                        f"refit failed under the 'abort' policy: {exc}",
                        replicate_index=index,
                    ) from exc
                last_exc = exc
                logger.debug(
                    "Replicate %d attempt %d degenerate (%s); redrawing.",
                    index,
                    attempt,
                    exc,
                )
                continue

            if not result.converged:
                logger.debug(
                    "Replicate %d kept without convergence after %d iterations.",
                    index,
                    result.n_iter,
                )
            return Replicate(
                index=index,
                beta=result.beta,
                sigma=result.sigma,
                theta=result.theta,
                converged=result.converged,
                objective=result.objective,
                se=result.se,
                n_iter=result.n_iter,
                n_retries=attempt,
            )

        raise BootstrapAbortedError(
            "degenerate",
            f"refit failed on all {self.max_retries + 1} draws; "
            f"last error: {last_exc}",
            replicate_index=index,
        ) from last_exc

    # ---- Run ---------------------------------------------------------

    def run(self) -> BootstrapSample:
        """Compute all replicates and return the bootstrap sample.

        Raises:
            BootstrapAbortedError: When a refit fails under the
                ``"abort"`` policy, a replicate exhausts its retry
                budget, or the deadline passes under ``"abort"``.
        """
        ctx = self._new_context()
        self.ctx = ctx
        start = time.perf_counter()
        deadline = start + self.timeout if self.timeout is not None else None
        indices = range(self.n_replicates)

        if self.n_jobs == 1:
            outcomes = [self._run_replicate(i, deadline) for i in indices]
        else:
            outcomes = Parallel(n_jobs=self.n_jobs, prefer="threads")(
                delayed(self._run_replicate)(i, deadline) for i in indices
            )

        ctx.elapsed_seconds = time.perf_counter() - start
        ctx.skipped = [i for i, r in zip(indices, outcomes, strict=True) if r is None]
        replicates = tuple(r for r in outcomes if r is not None)
        ctx.retries = {r.index: r.n_retries for r in replicates if r.n_retries > 0}

        if ctx.skipped:
            ctx.timed_out = True
            if self.failure_policy == "abort":
                raise BootstrapAbortedError(
                    "timeout",
                    f"deadline of {self.timeout}s reached with "
                    f"{len(ctx.skipped)} of {self.n_replicates} replicates not started.",
                    replicate_index=ctx.skipped[0],
                )
            msg = (
                f"Bootstrap deadline of {self.timeout}s reached: returning "
                f"{len(replicates)} of {self.n_replicates} replicates."
            )
            ctx.warnings_captured.append(msg)
            warnings.warn(msg, UserWarning, stacklevel=2)

        n_nonconverged = sum(not r.converged for r in replicates)
        if n_nonconverged:
            msg = (
                f"{n_nonconverged} of {len(replicates)} bootstrap refits did not "
                "converge; their best parameters are kept in the sample."
            )
            ctx.warnings_captured.append(msg)
            warnings.warn(msg, ConvergenceWarning, stacklevel=2)

        logger.debug(
            "Bootstrap finished: %d/%d replicates, %d redraws, %d non-converged, %.3fs.",
            len(replicates),
            self.n_replicates,
            ctx.total_retries,
            n_nonconverged,
            ctx.elapsed_seconds,
        )

        m = self.model
        return BootstrapSample(
            replicates=replicates,
            terms=m.terms,
            lowerbd=self._lowerbd.copy(),
            fixed_names=m.coef_names,
            n_requested=self.n_replicates,
            original_beta=m.beta.copy(),
            original_sigma=float(m.sigma),
            original_theta=m.theta.copy(),
            reml=m.reml,
            complete=not ctx.skipped,
            singular_tol=self.singular_tol,
            context=ctx,
        )


def parametric_bootstrap(
    model: FittedModel,
    n_replicates: int,
    random_state: RandomStateLike = None,
    *,
    n_jobs: int = 1,
    failure_policy: str | None = None,
    max_retries: int | None = None,
    timeout: float | None = None,
    singular_tol: float = DEFAULT_SINGULAR_TOL,
    ftol: float = _DEFAULT_FTOL,
    gtol: float = _DEFAULT_GTOL,
    maxiter: int = _DEFAULT_MAXITER,
) -> BootstrapSample:
    """Draw a parametric-bootstrap sample from a fitted LMM.

    Each replicate simulates a response from (β̂, σ̂, θ̂) and re-fits
    all parameters by profiled ML/REML (matching the original fit),
    warm-started at θ̂.

    Args:
        model: Fitted model (see :func:`~.model.fit_lmm`).
        n_replicates: Number of replicates (>= 1).
        random_state: Seed, ``SeedSequence`` or ``Generator``.
            Results depend only on this and *n_replicates*, not on
            *n_jobs*.
        n_jobs: Worker threads; ``1`` runs a plain loop and ``-1``
            uses every core.
        failure_policy: ``"redraw"`` or ``"abort"`` for degenerate
            refits; ``None`` resolves via
            :func:`~._config.get_failure_policy`.
        max_retries: Redraws per replicate under ``"redraw"``;
            ``None`` resolves via :func:`~._config.get_max_retries`.
        timeout: Optional deadline in seconds.  Replicates not yet
            started when it passes are skipped and a partial sample
            is returned (``complete=False``), unless the policy is
            ``"abort"``.
        singular_tol: Default tolerance of the sample's singular
            flags.
        ftol: L-BFGS-B relative reduction tolerance.
        gtol: L-BFGS-B projected-gradient tolerance.
        maxiter: L-BFGS-B iteration budget per refit.

    Returns:
        A :class:`~._results.BootstrapSample`.

    Examples:
        >>> model = fit_lmm(X, y, groups)                  # doctest: +SKIP
        >>> sample = parametric_bootstrap(model, 1000, 42) # doctest: +SKIP
        >>> sample.confint()                               # doctest: +SKIP
    """
    engine = BootstrapEngine(
        model,
        n_replicates,
        random_state,
        n_jobs=n_jobs,
        failure_policy=failure_policy,
        max_retries=max_retries,
        timeout=timeout,
        singular_tol=singular_tol,
        ftol=ftol,
        gtol=gtol,
        maxiter=maxiter,
    )
    return engine.run()


__all__ = ["BootstrapEngine", "parametric_bootstrap"]
