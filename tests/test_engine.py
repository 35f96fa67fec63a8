"""Tests for BootstrapEngine / parametric_bootstrap.

Covers the run contract: ordering and length, reproducibility across
worker counts, the failure policies under injected refit failures,
deadlines, and input validation.  Models are kept small so each run
finishes in well under a second.
"""

from __future__ import annotations

import time
import warnings
from dataclasses import replace
from unittest import mock

import numpy as np
import pandas as pd
import pytest
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from lmm_bootstrap._config import set_failure_policy, set_max_retries
from lmm_bootstrap._errors import BootstrapAbortedError, DegenerateRefitError
from lmm_bootstrap.engine import BootstrapEngine, parametric_bootstrap
from lmm_bootstrap.model import fit_lmm
from lmm_bootstrap.refit import refit as _real_refit
from lmm_bootstrap.simulate import seed_sequence, simulate_response, substream
from lmm_bootstrap.singularity import is_singular

# ------------------------------------------------------------------ #
# Shared fixtures
# ------------------------------------------------------------------ #

_SEED = 42
_N_REPS = 8  # small for speed; enough to test ordering and policies


@pytest.fixture(scope="module")
def scalar_model():
    """Random-intercept model: 10 groups of 6."""
    rng = np.random.default_rng(_SEED)
    groups = np.repeat(np.arange(10), 6)
    x = rng.standard_normal(60)
    y = 1.0 + 0.5 * x + rng.standard_normal(10)[groups] + rng.standard_normal(60)
    return fit_lmm(pd.DataFrame({"x": x}), y, groups)


@pytest.fixture(scope="module")
def slope_model():
    """Correlated random intercept and slope: 12 groups of 8."""
    rng = np.random.default_rng(_SEED + 1)
    groups = np.repeat(np.arange(12), 8)
    t = np.tile(np.arange(8, dtype=float), 12)
    b0 = rng.standard_normal(12) * 2.0
    b1 = rng.standard_normal(12) * 0.5
    y = 3.0 + 1.0 * t + b0[groups] + b1[groups] * t + rng.standard_normal(96)
    return fit_lmm(pd.DataFrame({"t": t}), y, groups, random_slopes=[0])


@pytest.fixture(autouse=True)
def _reset_config():
    import lmm_bootstrap._config as _cfg

    _cfg._policy_override = None
    _cfg._max_retries_override = None
    yield
    _cfg._policy_override = None
    _cfg._max_retries_override = None


def _failing_refit(index, fail_attempts=None):
    """Wrap refit so replicate *index* fails on its first attempts (or always)."""

    def wrapper(y, workspace, *args, **kwargs):
        if workspace.replicate_index == index and (
            fail_attempts is None or workspace.attempt < fail_attempts
        ):
            raise DegenerateRefitError(
                f"{workspace.describe()}: Λ'Z'ZΛ + I is not positive definite."
            )
        return _real_refit(y, workspace, *args, **kwargs)

    return wrapper


# ------------------------------------------------------------------ #
# Run contract
# ------------------------------------------------------------------ #


class TestRun:
    def test_length_and_order(self, scalar_model):
        sample = parametric_bootstrap(scalar_model, _N_REPS, _SEED)
        assert len(sample) == _N_REPS
        assert sample.complete
        np.testing.assert_array_equal(sample.indices, np.arange(_N_REPS))
        assert sample.fixed_names == ("(Intercept)", "x")
        assert sample.reml == scalar_model.reml

    def test_original_estimates_recorded(self, scalar_model):
        sample = parametric_bootstrap(scalar_model, 2, _SEED)
        np.testing.assert_array_equal(sample.original_theta, scalar_model.theta)
        assert sample.original_sigma == scalar_model.sigma

    def test_same_seed_same_sample(self, scalar_model):
        a = parametric_bootstrap(scalar_model, _N_REPS, _SEED)
        b = parametric_bootstrap(scalar_model, _N_REPS, _SEED)
        np.testing.assert_array_equal(a.theta, b.theta)
        np.testing.assert_array_equal(a.beta, b.beta)

    def test_different_seed_different_sample(self, scalar_model):
        a = parametric_bootstrap(scalar_model, _N_REPS, 1)
        b = parametric_bootstrap(scalar_model, _N_REPS, 2)
        assert not np.allclose(a.sigma, b.sigma)

    def test_parallel_matches_sequential(self, scalar_model):
        seq = parametric_bootstrap(scalar_model, _N_REPS, _SEED, n_jobs=1)
        par = parametric_bootstrap(scalar_model, _N_REPS, _SEED, n_jobs=3)
        assert par.theta.tobytes() == seq.theta.tobytes()
        assert par.beta.tobytes() == seq.beta.tobytes()
        assert par.sigma.tobytes() == seq.sigma.tobytes()
        np.testing.assert_array_equal(par.indices, seq.indices)

    def test_replicate_uses_its_own_substream(self, scalar_model):
        sample = parametric_bootstrap(scalar_model, 4, _SEED)
        m = scalar_model
        rng = substream(seed_sequence(_SEED), 2)
        y_star = simulate_response(rng, m.beta, m.sigma, m.theta, m.X, m.Z, m.terms)
        expected = _real_refit(y_star, m.workspace(), m.theta, m.lowerbd)
        np.testing.assert_allclose(sample[2].theta, expected.theta)
        np.testing.assert_allclose(sample[2].beta, expected.beta)

    def test_prefix_is_stable(self, scalar_model):
        short = parametric_bootstrap(scalar_model, 3, _SEED)
        long = parametric_bootstrap(scalar_model, 6, _SEED)
        np.testing.assert_array_equal(long.theta[:3], short.theta)

    def test_generator_seed(self, scalar_model):
        a = parametric_bootstrap(scalar_model, 2, np.random.default_rng(5))
        b = parametric_bootstrap(scalar_model, 2, np.random.default_rng(5))
        np.testing.assert_array_equal(a.theta, b.theta)

    def test_context(self, scalar_model):
        sample = parametric_bootstrap(scalar_model, 3, _SEED)
        ctx = sample.context
        assert ctx.seed_entropy == _SEED
        assert ctx.n_requested == 3
        assert ctx.failure_policy == "redraw"
        assert ctx.max_retries == 10
        assert ctx.skipped == []
        assert not ctx.timed_out
        assert ctx.elapsed_seconds >= 0.0

    def test_run_is_repeatable(self, scalar_model):
        engine = BootstrapEngine(scalar_model, 3, _SEED)
        np.testing.assert_array_equal(engine.run().theta, engine.run().theta)

    def test_model_not_mutated(self, scalar_model):
        theta = scalar_model.theta.copy()
        parametric_bootstrap(scalar_model, 3, _SEED, n_jobs=2)
        np.testing.assert_array_equal(scalar_model.theta, theta)


# ------------------------------------------------------------------ #
# Bounds, singularity and covariance views
# ------------------------------------------------------------------ #


class TestScalarTerm:
    def test_theta_respects_bound_and_flags_match(self, scalar_model):
        sample = parametric_bootstrap(scalar_model, 5, _SEED)
        lb = scalar_model.lowerbd
        assert np.all(sample.theta[:, 0] >= lb[0])
        expected = [abs(t[0] - lb[0]) <= 1e-4 for t in sample.theta]
        np.testing.assert_array_equal(sample.singular, expected)
        for rep, flag in zip(sample, sample.singular, strict=True):
            assert is_singular(rep.theta, lb) == flag

    def test_singular_original_fit_is_re_estimated(self, scalar_model):
        m = replace(scalar_model, theta=np.zeros(1))
        n_reps = 20
        sample = parametric_bootstrap(m, n_reps, _SEED)
        assert sample.n_singular < n_reps
        base = seed_sequence(_SEED)
        for rep in sample:
            rng = substream(base, rep.index)
            y_star = simulate_response(rng, m.beta, m.sigma, m.theta, m.X, m.Z, m.terms)
            fresh = _real_refit(y_star, m.workspace(), np.ones(1), m.lowerbd)
            assert rep.objective <= fresh.objective + 1e-8


class TestVectorTerm:
    def test_sigmarhos_shapes_and_range(self, slope_model):
        sample = parametric_bootstrap(slope_model, 5, _SEED)
        for sr_map in sample.sigmarhos:
            sr = sr_map["group"]
            assert sr.sigma.shape == (2,)
            assert sr.rho.shape == (1,)
            if np.all(sr.sigma > 0):
                assert -1.0 <= sr.rho[0] <= 1.0
            else:
                assert np.isnan(sr.rho[0])

    def test_confint_table(self, slope_model):
        ci = parametric_bootstrap(slope_model, 5, _SEED).confint()
        assert "rho_group_t_(Intercept)" in set(ci["parameter"])
        assert np.all(ci["lower"] <= ci["upper"])


# ------------------------------------------------------------------ #
# Failure policies
# ------------------------------------------------------------------ #


class TestFailurePolicy:
    def test_redraw_replaces_failed_replicate(self, scalar_model):
        with mock.patch(
            "lmm_bootstrap.engine.refit", side_effect=_failing_refit(3, fail_attempts=2)
        ):
            sample = parametric_bootstrap(
                scalar_model, 6, _SEED, failure_policy="redraw", max_retries=5
            )
        assert len(sample) == 6
        assert sample[3].n_retries == 2
        assert sample.context.retries == {3: 2}
        assert all(r.n_retries == 0 for r in sample if r.index != 3)

    def test_redraw_continues_same_substream(self, scalar_model):
        clean = parametric_bootstrap(scalar_model, 5, _SEED)
        with mock.patch(
            "lmm_bootstrap.engine.refit", side_effect=_failing_refit(3, fail_attempts=1)
        ):
            redrawn = parametric_bootstrap(scalar_model, 5, _SEED, max_retries=5)
        # Other replicates are untouched; replicate 3 uses its second draw.
        mask = np.arange(5) != 3
        np.testing.assert_array_equal(redrawn.theta[mask], clean.theta[mask])
        assert not np.allclose(redrawn[3].theta, clean[3].theta)

    def test_redraw_budget_exhausted(self, scalar_model):
        with mock.patch("lmm_bootstrap.engine.refit", side_effect=_failing_refit(3)):
            with pytest.raises(BootstrapAbortedError) as excinfo:
                parametric_bootstrap(scalar_model, 6, _SEED, max_retries=5)
        assert excinfo.value.kind == "degenerate"
        assert excinfo.value.replicate_index == 3
        assert "replicate 3" in str(excinfo.value)

    def test_abort_policy(self, scalar_model):
        with mock.patch("lmm_bootstrap.engine.refit", side_effect=_failing_refit(3)):
            with pytest.raises(BootstrapAbortedError, match="replicate 3") as excinfo:
                parametric_bootstrap(scalar_model, 6, _SEED, failure_policy="abort")
        assert excinfo.value.replicate_index == 3
        assert isinstance(excinfo.value.__cause__, DegenerateRefitError)

    def test_abort_policy_parallel(self, scalar_model):
        with mock.patch("lmm_bootstrap.engine.refit", side_effect=_failing_refit(3)):
            with pytest.raises(BootstrapAbortedError):
                parametric_bootstrap(
                    scalar_model, 6, _SEED, failure_policy="abort", n_jobs=2
                )

    def test_zero_retries(self, scalar_model):
        with mock.patch(
            "lmm_bootstrap.engine.refit", side_effect=_failing_refit(1, fail_attempts=1)
        ):
            with pytest.raises(BootstrapAbortedError, match="all 1 draws"):
                parametric_bootstrap(scalar_model, 3, _SEED, max_retries=0)

    def test_policy_from_config(self, scalar_model):
        set_failure_policy("abort")
        set_max_retries(2)
        engine = BootstrapEngine(scalar_model, 2, _SEED)
        assert engine.failure_policy == "abort"
        assert engine.max_retries == 2

    def test_nonconvergence_warns(self, scalar_model):
        import dataclasses

        def not_converged(*args, **kwargs):
            return dataclasses.replace(_real_refit(*args, **kwargs), converged=False)

        with mock.patch("lmm_bootstrap.engine.refit", side_effect=not_converged):
            with pytest.warns(ConvergenceWarning, match="3 of 3"):
                sample = parametric_bootstrap(scalar_model, 3, _SEED)
        assert sample.n_nonconverged == 3
        assert len(sample.context.warnings_captured) == 1


# ------------------------------------------------------------------ #
# Deadline
# ------------------------------------------------------------------ #


class TestTimeout:
    @staticmethod
    def _slow_refit(*args, **kwargs):
        time.sleep(0.2)
        return _real_refit(*args, **kwargs)

    def test_partial_sample(self, scalar_model):
        with mock.patch("lmm_bootstrap.engine.refit", side_effect=self._slow_refit):
            with pytest.warns(UserWarning, match="deadline"):
                sample = parametric_bootstrap(scalar_model, 5, _SEED, timeout=0.1)
        assert not sample.complete
        assert len(sample) == 1
        assert sample[0].index == 0
        assert sample.context.timed_out
        assert sample.context.skipped == [1, 2, 3, 4]

    def test_abort_on_timeout(self, scalar_model):
        with mock.patch("lmm_bootstrap.engine.refit", side_effect=self._slow_refit):
            with pytest.raises(BootstrapAbortedError) as excinfo:
                parametric_bootstrap(
                    scalar_model, 5, _SEED, timeout=0.1, failure_policy="abort"
                )
        assert excinfo.value.kind == "timeout"

    def test_generous_deadline_completes(self, scalar_model):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            sample = parametric_bootstrap(scalar_model, 3, _SEED, timeout=60.0)
        assert sample.complete
        assert not any("deadline" in str(w.message) for w in caught)


# ------------------------------------------------------------------ #
# Input validation
# ------------------------------------------------------------------ #


class TestValidation:
    @pytest.mark.parametrize("n", [0, -3, 2.0, True])
    def test_bad_replicate_count(self, scalar_model, n):
        with pytest.raises(ValueError, match="n_replicates"):
            BootstrapEngine(scalar_model, n)

    def test_bad_policy(self, scalar_model):
        with pytest.raises(ValueError, match="Unknown failure policy"):
            BootstrapEngine(scalar_model, 2, failure_policy="ignore")

    def test_bad_max_retries(self, scalar_model):
        with pytest.raises(ValueError, match="max_retries"):
            BootstrapEngine(scalar_model, 2, max_retries=-1)

    def test_bad_timeout(self, scalar_model):
        with pytest.raises(ValueError, match="timeout"):
            BootstrapEngine(scalar_model, 2, timeout=0)

    def test_bad_n_jobs(self, scalar_model):
        with pytest.raises(ValueError, match="n_jobs"):
            BootstrapEngine(scalar_model, 2, n_jobs=0)

    def test_bad_seed_type(self, scalar_model):
        with pytest.raises(TypeError, match="random_state"):
            BootstrapEngine(scalar_model, 2, random_state="seed")

    def test_invalid_model(self, scalar_model):
        import dataclasses

        bad = dataclasses.replace(scalar_model, sigma=-1.0)
        with pytest.raises(ValueError, match="sigma"):
            BootstrapEngine(bad, 2)

    def test_not_a_model(self):
        with pytest.raises(ValueError, match="FittedModel"):
            BootstrapEngine(object(), 2)  # type: ignore[arg-type]


@pytest.mark.slow
def test_larger_parallel_run_matches_sequential(slope_model):
    seq = parametric_bootstrap(slope_model, 100, _SEED, n_jobs=1)
    par = parametric_bootstrap(slope_model, 100, _SEED, n_jobs=-1)
    assert len(par) == 100
    np.testing.assert_allclose(par.theta, seq.theta, rtol=1e-10, atol=1e-12)
    assert 0.0 <= par.proportion_singular <= 1.0
    ci = par.confint(level=0.9)
    assert ci.shape == (len(par.parameter_names()) - slope_model.n_theta, 4)
