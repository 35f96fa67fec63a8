"""Response simulation and per-replicate random streams.

Simulation
----------
Given fitted parameters (β̂, σ̂, θ̂) a parametric-bootstrap response is

    u  ~ N(0, I_q)               spherical random effects
    b* = σ̂ · Λ(θ̂) u              random effects on the natural scale
    ε  ~ N(0, I_n)
    y* = X β̂ + Z b* + σ̂ ε

The random-effect draws are consumed **before** the residual draws,
always as two ``standard_normal`` calls of sizes q and n.  For a
fixed generator state the output is therefore bit-reproducible.

Substreams
----------
Replicate i never shares a generator with any other replicate.  Its
stream is derived from the run's base :class:`numpy.random.SeedSequence`
and the index alone:

    substream(base, i) ≡ base.spawn(i + 1)[i]     (for a fresh base)

computed directly from the base entropy and spawn key, so the base
sequence is never mutated and the mapping does not depend on which
worker picks up which index or in which order.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from ._terms import GroupingTerm, n_random
from ._typing import RandomStateLike
from .transform import build_lambda


def seed_sequence(random_state: RandomStateLike = None) -> np.random.SeedSequence:
    """Normalise *random_state* into a base ``SeedSequence``.

    Accepted types:
        * ``None``: fresh OS entropy (recorded in the sequence's
          ``entropy`` attribute so the run can be replayed).
        * ``int``: used as the entropy.
        * ``SeedSequence``: returned as-is.
        * ``Generator``: one 63-bit integer is drawn from it and used
          as the entropy, advancing the generator once.

    Raises:
        TypeError: For any other type.
    """
    if isinstance(random_state, np.random.SeedSequence):
        return random_state
    if isinstance(random_state, np.random.Generator):
        return np.random.SeedSequence(int(random_state.integers(0, 2**63 - 1)))
    if random_state is None or (
        isinstance(random_state, (int, np.integer))
        and not isinstance(random_state, bool)
    ):
        return np.random.SeedSequence(random_state)
    raise TypeError(
        "random_state must be None, an int, a numpy SeedSequence or a numpy "
        f"Generator, got {type(random_state).__name__}."
    )


def substream(base: np.random.SeedSequence, index: int) -> np.random.Generator:
    """Return the private generator for replicate *index*.

    Pure function of ``(base.entropy, base.spawn_key, index)``.

    Raises:
        ValueError: If *index* is negative.
    """
    if index < 0:
        raise ValueError(f"Replicate index must be non-negative, got {index}.")
    child = np.random.SeedSequence(
        entropy=base.entropy,
        spawn_key=(*base.spawn_key, int(index)),
        pool_size=base.pool_size,
    )
    return np.random.default_rng(child)


def simulate_response(
    rng: np.random.Generator,
    beta: np.ndarray,
    sigma: float,
    theta: np.ndarray,
    X: np.ndarray,
    Z: np.ndarray,
    terms: Sequence[GroupingTerm],
) -> np.ndarray:
    """Draw one response vector from the fitted LMM.

    Args:
        rng: Generator to draw from (advanced by q + n normals).
        beta: Fixed effects ``(p,)``.
        sigma: Residual standard deviation.
        theta: Covariance parameter ``(k,)``.
        X: Fixed-effects design ``(n, p)``.
        Z: Random-effects design ``(n, q)``.
        terms: Grouping-term descriptors matching the columns of Z.

    Returns:
        Simulated response ``(n,)``.
    """
    q = n_random(terms)
    n = X.shape[0]
    Lambda = build_lambda(theta, terms)

    u = rng.standard_normal(q)
    eps = rng.standard_normal(n)

    b = sigma * (Lambda @ u)
    return X @ beta + Z @ b + sigma * eps


__all__ = ["seed_sequence", "simulate_response", "substream"]
