"""lmm_bootstrap: Parametric bootstrap for fitted linear mixed models.

Simulates responses from a fitted Gaussian LMM (β̂, σ̂, θ̂), re-fits
every replicate by profiled ML/REML with a bounded quasi-Newton
optimiser, and collects the draws into an ordered, immutable sample
with covariance-scale views, boundary-singularity flags, and
shortest-coverage / equal-tail intervals.  Replicates draw from
independent, index-keyed random substreams, so results are identical
for any worker count.

Public API:
    .. autosummary::
        parametric_bootstrap
        fit_lmm
        refit
        simulate_response
        seed_sequence
        substream
        is_singular
        singular_flags
        sigmas
        sigma_rhos
        theta_to_blocks
        shortest_coverage_interval
        equal_tail_interval
        print_bootstrap_table
        get_failure_policy
        set_failure_policy
        get_max_retries
        set_max_retries
        make_terms
        build_random_effects_design
        BootstrapEngine
        FittedModel
        GroupingTerm
        BootstrapSample
        Replicate
        BootstrapContext
        SigmaRho
        DegenerateRefitError
        BootstrapAbortedError
"""

from ._config import (
    get_failure_policy,
    get_max_retries,
    set_failure_policy,
    set_max_retries,
)
from ._context import BootstrapContext
from ._design import build_random_effects_design
from ._errors import BootstrapAbortedError, DegenerateRefitError
from ._results import BootstrapSample, Replicate
from ._terms import GroupingTerm, make_terms
from .display import print_bootstrap_table
from .engine import BootstrapEngine, parametric_bootstrap
from .intervals import equal_tail_interval, shortest_coverage_interval
from .model import FittedModel, fit_lmm
from .refit import refit
from .simulate import seed_sequence, simulate_response, substream
from .singularity import is_singular, singular_flags
from .transform import SigmaRho, sigma_rhos, sigmas, theta_to_blocks

__all__ = [
    "BootstrapSample",
    "Replicate",
    "BootstrapContext",
    "parametric_bootstrap",
    "fit_lmm",
    "refit",
    "simulate_response",
    "seed_sequence",
    "substream",
    "is_singular",
    "singular_flags",
    "sigmas",
    "sigma_rhos",
    "theta_to_blocks",
    "shortest_coverage_interval",
    "equal_tail_interval",
    "print_bootstrap_table",
    "get_failure_policy",
    "set_failure_policy",
    "get_max_retries",
    "set_max_retries",
    "make_terms",
    "build_random_effects_design",
    "BootstrapEngine",
    "FittedModel",
    "GroupingTerm",
    "SigmaRho",
    "DegenerateRefitError",
    "BootstrapAbortedError",
]

__version__ = "0.1.0"
