"""Shared type aliases for the lmm_bootstrap package."""

import numpy as np
import pandas as pd

# Array-like inputs accepted by the public API.
ArrayLike = np.ndarray | pd.DataFrame | pd.Series

# Anything :func:`lmm_bootstrap.simulate.seed_sequence` can turn into a
# base seed sequence.
RandomStateLike = int | np.random.SeedSequence | np.random.Generator | None
