"""Tests for the profiled ML/REML refit.

The profiled deviance is checked against the marginal likelihood
evaluated directly from V = ZΛΛ'Z' + I, and the REML estimates are
cross-checked against statsmodels ``MixedLM``.
"""

from __future__ import annotations

import numpy as np
import pytest

from lmm_bootstrap._design import build_random_effects_design
from lmm_bootstrap._errors import DegenerateRefitError
from lmm_bootstrap._terms import theta_lower_bounds
from lmm_bootstrap.refit import (
    ProfiledWorkspace,
    _response_products,
    penalized_solve,
    profiled_deviance,
    refit,
)
from lmm_bootstrap.singularity import is_singular
from lmm_bootstrap.transform import build_lambda

_SEED = 2024
_LOG_2PI = np.log(2.0 * np.pi)


@pytest.fixture()
def grouped_data():
    """20 groups of 8 with a random intercept of sd 1.5 and noise sd 1."""
    rng = np.random.default_rng(_SEED)
    G, m = 20, 8
    groups = np.repeat(np.arange(G), m)
    x = rng.standard_normal(G * m)
    b = rng.standard_normal(G) * 1.5
    y = 1.0 + 2.0 * x + b[groups] + rng.standard_normal(G * m)
    X = np.column_stack([np.ones(G * m), x])
    Z, terms = build_random_effects_design(groups)
    return X, Z, terms, y, groups


def _direct_deviance(theta, X, Z, terms, y, reml):
    """-2 log-likelihood maximised over (β, σ) at fixed θ, from V directly."""
    n, p = X.shape
    Lam = build_lambda(theta, terms)
    V = Z @ Lam @ Lam.T @ Z.T + np.eye(n)
    Vinv = np.linalg.inv(V)
    XtVX = X.T @ Vinv @ X
    beta = np.linalg.solve(XtVX, X.T @ Vinv @ y)
    r = y - X @ beta
    rss = float(r @ Vinv @ r)
    logdetV = np.linalg.slogdet(V)[1]
    if reml:
        nu = n - p
        return logdetV + np.linalg.slogdet(XtVX)[1] + nu * (1 + _LOG_2PI + np.log(rss / nu))
    return logdetV + n * (1 + _LOG_2PI + np.log(rss / n))


class TestProfiledDeviance:
    @pytest.mark.parametrize("reml", [True, False])
    @pytest.mark.parametrize("theta0", [0.0, 0.5, 2.0])
    def test_matches_marginal_likelihood(self, grouped_data, reml, theta0):
        X, Z, terms, y, _ = grouped_data
        ws = ProfiledWorkspace.from_design(X, Z, terms, reml=reml)
        theta = np.array([theta0])
        np.testing.assert_allclose(
            profiled_deviance(theta, ws, y),
            _direct_deviance(theta, X, Z, terms, y, reml),
            rtol=1e-9,
        )

    def test_random_slope_model(self):
        rng = np.random.default_rng(3)
        groups = np.repeat(np.arange(8), 6)
        x = rng.standard_normal(48)
        X = np.column_stack([np.ones(48), x])
        Z, terms = build_random_effects_design(groups, X=x[:, None], random_slopes=[0])
        y = X @ [0.5, 1.0] + rng.standard_normal(48)
        ws = ProfiledWorkspace.from_design(X, Z, terms)
        theta = np.array([0.9, -0.3, 0.4])
        np.testing.assert_allclose(
            profiled_deviance(theta, ws, y),
            _direct_deviance(theta, X, Z, terms, y, True),
            rtol=1e-9,
        )


class TestWorkspace:
    def test_clone_shares_cross_products(self, grouped_data):
        X, Z, terms, _, _ = grouped_data
        ws = ProfiledWorkspace.from_design(X, Z, terms)
        clone = ws.clone(replicate_index=4, attempt=1)
        assert clone.ZtZ is ws.ZtZ
        assert clone.XtX is ws.XtX
        assert clone.lambda_buf is not ws.lambda_buf
        assert clone.describe() == "replicate 4 (attempt 1)"
        assert ws.describe() == "refit"


class TestRefit:
    def test_recovers_reml_estimates_of_statsmodels(self, grouped_data):
        import statsmodels.api as sm

        X, Z, terms, y, groups = grouped_data
        ws = ProfiledWorkspace.from_design(X, Z, terms, reml=True)
        lb = theta_lower_bounds(terms)
        res = refit(y, ws, np.array([1.0]), lb, maxiter=1000)

        sm_fit = sm.MixedLM(y, X, groups=groups).fit(reml=True)
        np.testing.assert_allclose(res.beta, np.asarray(sm_fit.fe_params), rtol=1e-3)
        np.testing.assert_allclose(res.sigma**2, sm_fit.scale, rtol=2e-2)
        np.testing.assert_allclose(
            (res.sigma * res.theta[0]) ** 2,
            np.asarray(sm_fit.cov_re)[0, 0],
            rtol=2e-2,
        )

    def test_objective_is_minimum_along_theta(self, grouped_data):
        X, Z, terms, y, _ = grouped_data
        ws = ProfiledWorkspace.from_design(X, Z, terms, reml=False)
        res = refit(y, ws, np.array([1.0]), theta_lower_bounds(terms))
        for step in (-0.05, 0.05):
            assert res.objective <= profiled_deviance(res.theta + step, ws, y) + 1e-8

    def test_ml_sigma_uses_n(self, grouped_data):
        X, Z, terms, y, _ = grouped_data
        lb = theta_lower_bounds(terms)
        ws = ProfiledWorkspace.from_design(X, Z, terms, reml=False)
        res = refit(y, ws, np.array([1.0]), lb)
        ws_check = ProfiledWorkspace.from_design(X, Z, terms, reml=False)
        sol = penalized_solve(res.theta, ws_check, _response_products(y, ws_check))
        assert res.sigma == pytest.approx(np.sqrt(sol.pwrss / X.shape[0]))

    def test_zero_between_group_variance_hits_bound(self):
        rng = np.random.default_rng(11)
        groups = np.repeat(np.arange(10), 5)
        e = rng.standard_normal(50)
        # Remove every group mean so the between-group spread is exactly zero.
        e -= np.repeat(e.reshape(10, 5).mean(axis=1), 5)
        y = 3.0 + e
        X = np.ones((50, 1))
        Z, terms = build_random_effects_design(groups)
        lb = theta_lower_bounds(terms)
        ws = ProfiledWorkspace.from_design(X, Z, terms)
        res = refit(y, ws, np.array([1.0]), lb)
        assert res.theta[0] >= 0.0
        assert is_singular(res.theta, lb, tol=1e-3)

    def test_start_outside_bounds_is_clipped(self, grouped_data):
        X, Z, terms, y, _ = grouped_data
        ws = ProfiledWorkspace.from_design(X, Z, terms)
        res = refit(y, ws, np.array([-1.0]), theta_lower_bounds(terms))
        assert res.theta[0] > 0.0

    def test_boundary_start_reaches_interior_optimum(self, grouped_data):
        X, Z, terms, y, _ = grouped_data
        ws = ProfiledWorkspace.from_design(X, Z, terms)
        lb = theta_lower_bounds(terms)
        from_zero = refit(y, ws, np.array([0.0]), lb)
        from_one = refit(y, ws, np.array([1.0]), lb)
        assert from_zero.theta[0] > 0.5
        assert not is_singular(from_zero.theta, lb)
        assert from_zero.objective <= from_one.objective + 1e-8
        np.testing.assert_allclose(from_zero.theta, from_one.theta)

    def test_wrong_shape_raises(self, grouped_data):
        X, Z, terms, y, _ = grouped_data
        ws = ProfiledWorkspace.from_design(X, Z, terms)
        with pytest.raises(ValueError, match="shape"):
            refit(y[:-1], ws, np.array([1.0]), theta_lower_bounds(terms))

    def test_non_finite_response_is_degenerate(self, grouped_data):
        X, Z, terms, y, _ = grouped_data
        ws = ProfiledWorkspace.from_design(X, Z, terms)
        y = y.copy()
        y[3] = np.nan
        with pytest.raises(DegenerateRefitError, match="non-finite"):
            refit(y, ws, np.array([1.0]), theta_lower_bounds(terms))

    def test_non_finite_theta_is_degenerate(self, grouped_data):
        X, Z, terms, y, _ = grouped_data
        ws = ProfiledWorkspace.from_design(X, Z, terms)
        with pytest.raises(DegenerateRefitError, match="non-finite"):
            penalized_solve(np.array([np.inf]), ws, _response_products(y, ws))

    def test_standard_errors_match_gls(self, grouped_data):
        X, Z, terms, y, _ = grouped_data
        ws = ProfiledWorkspace.from_design(X, Z, terms)
        res = refit(y, ws, np.array([1.0]), theta_lower_bounds(terms))
        Lam = build_lambda(res.theta, terms)
        V = Z @ Lam @ Lam.T @ Z.T + np.eye(X.shape[0])
        cov = res.sigma**2 * np.linalg.inv(X.T @ np.linalg.solve(V, X))
        np.testing.assert_allclose(res.se, np.sqrt(np.diag(cov)), rtol=1e-8)

    def test_degenerate_error_is_linalg_error(self):
        assert issubclass(DegenerateRefitError, np.linalg.LinAlgError)
