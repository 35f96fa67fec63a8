"""Run-policy configuration for the lmm_bootstrap package.

Controls what the bootstrap scheduler does when a replicate's refit
hits a numerically degenerate factorisation, and how many redraws it
may spend on one replicate before giving up.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_failure_policy` /
       :func:`set_max_retries`.
    2. The ``LMM_BOOTSTRAP_FAILURE_POLICY`` and
       ``LMM_BOOTSTRAP_MAX_RETRIES`` environment variables.
    3. Package defaults: ``"redraw"`` with 10 retries.

Valid policy names are ``"redraw"`` and ``"abort"``
(case-insensitive).

Examples:
    Make every run all-or-nothing from the shell::

        export LMM_BOOTSTRAP_FAILURE_POLICY=abort

    Or programmatically::

        import lmm_bootstrap
        lmm_bootstrap.set_failure_policy("abort")

    Re-enable the default resolution::

        lmm_bootstrap.set_failure_policy("auto")
"""

from __future__ import annotations

import os

_VALID_POLICIES = {"redraw", "abort", "auto"}

_DEFAULT_POLICY = "redraw"
_DEFAULT_MAX_RETRIES = 10

# Sentinels indicating "no programmatic override has been set".
_policy_override: str | None = None
_max_retries_override: int | None = None


def get_failure_policy() -> str:
    """Return the active failure policy (``"redraw"`` or ``"abort"``).

    Resolution order:
        1. Value set by :func:`set_failure_policy` (unless ``"auto"``).
        2. ``LMM_BOOTSTRAP_FAILURE_POLICY`` environment variable.
        3. ``"redraw"``.

    Returns:
        ``"redraw"`` or ``"abort"``.
    """
    # 1. Programmatic override
    if _policy_override is not None and _policy_override != "auto":
        return _policy_override

    # 2. Environment variable
    env = os.environ.get("LMM_BOOTSTRAP_FAILURE_POLICY", "").strip().lower()
    if env in ("redraw", "abort"):
        return env

    # 3. Default
    return _DEFAULT_POLICY


def set_failure_policy(name: str) -> None:
    """Override the failure-policy selection.

    Args:
        name: One of ``"redraw"``, ``"abort"``, or ``"auto"``
            (case-insensitive).  ``"auto"`` restores the default
            resolution order.

    Raises:
        ValueError: If *name* is not a recognised policy.
    """
    global _policy_override
    normalised = name.strip().lower()
    if normalised not in _VALID_POLICIES:
        raise ValueError(
            f"Unknown failure policy '{name}'. "
            f"Choose from: {sorted(_VALID_POLICIES)}"
        )
    _policy_override = normalised


def get_max_retries() -> int:
    """Return the active per-replicate redraw budget.

    Resolution order:
        1. Value set by :func:`set_max_retries` (unless ``None``).
        2. ``LMM_BOOTSTRAP_MAX_RETRIES`` environment variable, when it
           parses as a non-negative integer.
        3. ``10``.
    """
    if _max_retries_override is not None:
        return _max_retries_override

    env = os.environ.get("LMM_BOOTSTRAP_MAX_RETRIES", "").strip()
    if env.isdigit():
        return int(env)

    return _DEFAULT_MAX_RETRIES


def set_max_retries(value: int | None) -> None:
    """Override the per-replicate redraw budget.

    Args:
        value: Non-negative number of redraws allowed after the first
            attempt, or ``None`` to restore the default resolution.

    Raises:
        ValueError: If *value* is negative or not an integer.
    """
    global _max_retries_override
    if value is None:
        _max_retries_override = None
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(
            f"max_retries must be a non-negative integer, got {value!r}."
        )
    _max_retries_override = value
