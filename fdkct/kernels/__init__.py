"""Numba kernels for cone-beam reconstruction.

This subpackage contains the parallel CPU kernel shared by the FDK and the
variance backprojectors.
"""

from .cone_beam import _cone_3d_backproject_kernel

__all__ = [
    '_cone_3d_backproject_kernel',
]
