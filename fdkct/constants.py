"""Global constants and configuration for the fdkct package.

This module defines core constants used throughout fdkct, including storage
and accumulation data types, numerical tolerances, and the Numba JIT
decorator shared by the backprojection kernels.
"""

import numpy as np
from numba import njit

# ---------------------------------------------------------------------------
# Data Types and Numerical Constants
# ---------------------------------------------------------------------------

_DTYPE = np.float32
"""Storage data type for projections and reconstructed volumes (numpy.float32)."""

_ACCUM_DTYPE = np.float64
"""Accumulation data type for filtering and backprojection sums (numpy.float64)."""

_EPSILON = 1e-9
"""Small epsilon value for geometric comparisons to avoid division by zero."""

_DEFAULT_PROJECTION_CHUNK = 64
"""Number of projections weighted and filtered per vectorised batch."""

# ---------------------------------------------------------------------------
# Numba JIT Decorators
# ---------------------------------------------------------------------------

# Voxel rows are distributed over worker threads with prange; fastmath stays
# off so that reductions are reproducible between runs.
_PARALLEL_DECORATOR = njit(parallel=True, cache=True, fastmath=False)
"""Numba CPU JIT decorator with parallel loops for backprojection kernels."""
