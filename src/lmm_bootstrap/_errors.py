"""Exception types raised by the bootstrap pipeline.

Two failure modes are distinguished:

* :class:`DegenerateRefitError`: one replicate's penalised
  least-squares factorisation broke down (a Cholesky factor that is
  not positive definite, a non-positive residual sum of squares, or a
  non-finite simulated response).  It is recoverable: the scheduler
  may redraw the replicate.
* :class:`BootstrapAbortedError`: the whole run is abandoned and no
  sample is produced.

Invalid inputs are reported with plain ``ValueError`` /
``TypeError`` before any replicate is computed.
"""

from __future__ import annotations

import numpy as np


class DegenerateRefitError(np.linalg.LinAlgError):
    """A refit hit a numerically degenerate intermediate quantity."""


class BootstrapAbortedError(RuntimeError):
    """A bootstrap run was aborted before producing a sample.

    Attributes:
        kind: ``"degenerate"`` (refit failure under the ``"abort"``
            policy, or an exhausted retry budget) or ``"timeout"``
            (deadline reached under the ``"abort"`` policy).
        replicate_index: 0-based index of the failing replicate, or
            ``None`` when the failure is not tied to one replicate.
    """

    def __init__(
        self,
        kind: str,
        message: str,
        replicate_index: int | None = None,
    ) -> None:
        self.kind = kind
        self.replicate_index = replicate_index
        where = f" (replicate {replicate_index})" if replicate_index is not None else ""
        super().__init__(f"[{kind}]{where} {message}")


__all__ = ["BootstrapAbortedError", "DegenerateRefitError"]
