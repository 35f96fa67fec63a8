"""
Parametric Bootstrap of a Random-Slope Model (Sleep-Deprivation Design)

Demonstrates:
- ``fit_lmm`` with a correlated random intercept and slope per subject
- External validation of the REML fit against statsmodels MixedLM
- ``parametric_bootstrap`` with a fixed seed, sequential and threaded
- Singular-fit proportion and σ/ρ views of every replicate
- Shortest-coverage vs equal-tail intervals
- ``print_bootstrap_table`` summary

Data
----
Simulated to mirror the classic sleep-deprivation study: 18 subjects
measured on 10 consecutive days.  Reaction time rises by ~10 ms/day on
average, with subject-specific baselines (sd ≈ 25 ms) and slopes
(sd ≈ 6 ms/day) and residual noise (sd ≈ 25 ms).  With only 18
subjects, the slope/intercept correlation is poorly identified and a
noticeable fraction of bootstrap refits lands on the boundary.
"""

import logging

import numpy as np
import pandas as pd
import statsmodels.regression.mixed_linear_model as mlm

from lmm_bootstrap import (
    fit_lmm,
    parametric_bootstrap,
    print_bootstrap_table,
)

logging.basicConfig(level=logging.INFO)

# ============================================================================
# Simulate data
# ============================================================================

rng = np.random.default_rng(20240601)
n_subjects, n_days = 18, 10
subject = np.repeat(np.arange(n_subjects), n_days)
days = np.tile(np.arange(n_days, dtype=float), n_subjects)
b = rng.multivariate_normal([0.0, 0.0], [[625.0, 11.0], [11.0, 36.0]], n_subjects)
reaction = (
    251.4
    + 10.5 * days
    + b[subject, 0]
    + b[subject, 1] * days
    + rng.standard_normal(n_subjects * n_days) * 25.6
)
X = pd.DataFrame({"days": days})

print("Dataset: simulated sleep-deprivation study")
print(f"  Observations:  {len(reaction)}")
print(f"  Subjects:      {n_subjects}")
print()

# ============================================================================
# Fit and validate
# ============================================================================

model = fit_lmm(X, reaction, subject, random_slopes=[0])
print("lmm_bootstrap REML fit")
print(f"  beta:   {dict(zip(model.coef_names, np.round(model.beta, 3)))}")
print(f"  sigma:  {model.sigma:.3f}")
sr = model.sigmarhos["group"]
print(f"  sd(RE): {np.round(sr.sigma, 3)}   rho: {np.round(sr.rho, 3)}")
print()

exog = np.column_stack([np.ones_like(days), days])
sm_fit = mlm.MixedLM(reaction, exog, groups=subject, exog_re=exog).fit(
    reml=True, disp=0
)
print("statsmodels MixedLM REML fit")
print(f"  beta:   {np.round(np.asarray(sm_fit.fe_params), 3)}")
print(f"  sigma:  {np.sqrt(sm_fit.scale):.3f}")
print(f"  sd(RE): {np.round(np.sqrt(np.diag(np.asarray(sm_fit.cov_re))), 3)}")
print()

# ============================================================================
# Bootstrap
# ============================================================================

sample = parametric_bootstrap(model, 500, random_state=42, n_jobs=-1)

print(f"Replicates:          {len(sample)}")
print(f"Singular replicates: {sample.n_singular} ({sample.proportion_singular:.1%})")
print(f"Non-converged:       {sample.n_nonconverged}")
print(f"Elapsed:             {sample.context.elapsed_seconds:.2f}s")
print()

# Same seed, sequential loop: identical draws.
check = parametric_bootstrap(model, 20, random_state=42, n_jobs=1)
assert np.allclose(check.theta, sample.theta[:20])

print_bootstrap_table(sample, level=0.95, method="shortest")
print_bootstrap_table(
    sample,
    level=0.95,
    method="equaltail",
    title="Parametric Bootstrap Results (equal-tail intervals)",
)

# Tabular access for downstream analysis.
df = sample.to_dataframe()
print(df[["sigma", "sigma_group_(Intercept)", "sigma_group_days"]].describe())
