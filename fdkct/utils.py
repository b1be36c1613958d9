"""Utility helpers for the fdkct package.

This module provides helpers for tensor conversion, guarded buffer
allocation, trigonometric table generation, memory layout validation,
padding lengths and stage timing.
"""

import contextlib
import logging
import math
import time

import numpy as np
import torch

from .exceptions import InvalidGeometryError, ResourceExhaustedError

logger = logging.getLogger(__name__)


# ============================================================================
# Tensor Conversion
# ============================================================================

def _as_cpu_tensor(data, dtype=torch.float32):
    """Return `data` as a contiguous CPU tensor of the requested dtype.

    Parameters
    ----------
    data : array-like or torch.Tensor
        Input array. NumPy arrays are wrapped without copying when the dtype
        already matches.
    dtype : torch.dtype, optional
        Target data type (default: torch.float32).

    Returns
    -------
    torch.Tensor
        Contiguous tensor on the CPU.

    Examples
    --------
    >>> _as_cpu_tensor(np.zeros((2, 3))).dtype
    torch.float32
    """
    if isinstance(data, torch.Tensor):
        tensor = data.detach()
        if tensor.device.type != "cpu":
            tensor = tensor.cpu()
    else:
        tensor = torch.as_tensor(np.asarray(data))
    return tensor.to(dtype=dtype).contiguous()


# ============================================================================
# Guarded Allocation
# ============================================================================

def _allocate(shape, dtype=torch.float32, what="buffer"):
    """Allocate a zero-filled CPU tensor, translating allocation failures.

    Parameters
    ----------
    shape : tuple of int
        Shape of the tensor.
    dtype : torch.dtype, optional
        Data type of the tensor (default: torch.float32).
    what : str, optional
        Human-readable buffer name used in log and error messages.

    Returns
    -------
    torch.Tensor
        Zero-filled tensor.

    Raises
    ------
    ResourceExhaustedError
        If the allocator cannot provide the requested memory.
    """
    shape = tuple(int(n) for n in shape)
    n_bytes = math.prod(shape) * torch.empty((), dtype=dtype).element_size()
    logger.debug("allocating %s of shape %s (%.1f MiB)", what, shape, n_bytes / 2**20)
    try:
        return torch.zeros(shape, dtype=dtype)
    except (MemoryError, RuntimeError) as exc:
        raise ResourceExhaustedError(
            f"cannot allocate {what} of shape {shape} ({n_bytes / 2**20:.1f} MiB)"
        ) from exc


# ============================================================================
# Trigonometric Table Generation
# ============================================================================

def _trig_tables(angles, dtype=np.float64):
    """Compute cosine and sine tables for projection angles.

    Parameters
    ----------
    angles : array-like
        Projection angles in radians.
    dtype : numpy.dtype, optional
        Data type of the returned tables (default: numpy.float64).

    Returns
    -------
    cos : numpy.ndarray
        Contiguous cosine values of `angles`.
    sin : numpy.ndarray
        Contiguous sine values of `angles`.

    Examples
    --------
    >>> cos, sin = _trig_tables([0.0, np.pi / 2])
    >>> cos.round(6)
    array([1., 0.])
    """
    angles = np.asarray(angles, dtype=np.float64)
    cos = np.ascontiguousarray(np.cos(angles), dtype=dtype)
    sin = np.ascontiguousarray(np.sin(angles), dtype=dtype)
    return cos, sin


# ============================================================================
# Memory Layout Validation
# ============================================================================

def _validate_3d_memory_layout(tensor, expected_order="VHW"):
    """Validate a 3D tensor before it is handed to the reconstruction kernels.

    Parameters
    ----------
    tensor : torch.Tensor
        3D tensor to validate.
    expected_order : str, optional
        Expected axis order, 'VHW' (views, rows, columns) for projection
        stacks or 'DHW' (depth, height, width) for volumes. Default is 'VHW'.

    Raises
    ------
    InvalidGeometryError
        If the tensor is not 3D, is empty, or is not contiguous.
    """
    shape = tuple(tensor.shape)
    if len(shape) != 3:
        if expected_order == "VHW":
            fix_str = "ensure your projections have shape (n_projections, rows, columns)"
        else:
            fix_str = "ensure your volume has shape (D, H, W)"
        raise InvalidGeometryError(f"Expected 3D tensor, got {len(shape)}D: {fix_str}")
    if min(shape) < 1:
        raise InvalidGeometryError(f"Expected a non-empty 3D tensor, got shape {shape}")
    if not tensor.is_contiguous():
        raise InvalidGeometryError(
            "Input tensor must be contiguous. Call .contiguous() before passing it "
            "to the reconstruction stages."
        )


# ============================================================================
# Padding
# ============================================================================

def _next_power_of_two(n):
    """Return the smallest power of two that is >= `n` (and >= 1).

    Examples
    --------
    >>> _next_power_of_two(256)
    256
    >>> _next_power_of_two(257)
    512
    """
    n = int(n)
    if n <= 1:
        return 1
    return 1 << (n - 1).bit_length()


# ============================================================================
# Stage Timing
# ============================================================================

@contextlib.contextmanager
def log_step(step_name, log=logger, level=logging.DEBUG):
    """Log the start and the duration of a processing step.

    Usage::

        with log_step("ramp filtering"):
            ...
    """
    start = time.perf_counter()
    log.log(level, "%s started", step_name)
    try:
        yield
    except Exception:
        log.log(level, "%s failed after %.3f s", step_name, time.perf_counter() - start)
        raise
    log.log(level, "%s completed in %.3f s", step_name, time.perf_counter() - start)
