"""
Exception hierarchy for the rqcore simulator.

Only contract violations raise. Numerical trouble (solver non-convergence,
NaN/Inf in the state) is reported through diagnostics instead:
see ``BiCGStabSolver.last_residual`` and ``HealthCheckResult``.
"""

import numpy as np


class RQCoreError(Exception):
    """Base class for all rqcore errors."""


class IllegalStateError(RQCoreError, RuntimeError):
    """Operation attempted in a lifecycle state that does not allow it."""


class InvalidArgumentError(RQCoreError, ValueError):
    """Malformed input: wrong lengths, out-of-range indices, bad weights."""


class ResourceExhaustionError(RQCoreError, MemoryError):
    """Buffer allocation failed."""


def allocate(shape, dtype, what: str = "buffer"):
    """
    Allocate a zeroed numpy buffer, translating MemoryError.

    Args:
        shape: Buffer shape
        dtype: numpy dtype
        what: Name used in the error message

    Returns:
        Zero-initialized array
    """
    try:
        return np.zeros(shape, dtype=dtype)
    except MemoryError as exc:
        raise ResourceExhaustionError(
            f"Failed to allocate {what} of shape {shape} ({np.dtype(dtype).name})"
        ) from exc
