"""In-memory projection stacks and volumes.

Projection stacks are stored as ``(n_projections, rows, columns)`` tensors,
volumes as ``(nz, ny, nx)`` tensors. Physical metadata is always given in
axis order: ``(u, v)`` for detectors, ``(x, y, z)`` for volumes.
"""

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import torch

from .exceptions import InvalidGeometryError
from .utils import _as_cpu_tensor, _validate_3d_memory_layout


def _check_spacing(spacing, n, what):
    try:
        spacing = tuple(float(s) for s in spacing)
    except TypeError as exc:
        raise InvalidGeometryError(f"{what} must be a sequence of {n} numbers") from exc
    if len(spacing) != n or not all(math.isfinite(s) and s > 0.0 for s in spacing):
        raise InvalidGeometryError(f"{what} must contain {n} positive finite values, got {spacing}")
    return spacing


def _check_origin(origin, n, what):
    try:
        origin = tuple(float(s) for s in origin)
    except TypeError as exc:
        raise InvalidGeometryError(f"{what} must be a sequence of {n} numbers") from exc
    if len(origin) != n or not all(math.isfinite(s) for s in origin):
        raise InvalidGeometryError(f"{what} must contain {n} finite values, got {origin}")
    return origin


@dataclass(frozen=True)
class ProjectionStack:
    """A stack of equally sized detector images.

    Parameters
    ----------
    data : torch.Tensor or numpy.ndarray
        Pixel values of shape (n_projections, rows, columns). Converted to a
        contiguous float32 CPU tensor.
    spacing : tuple of float
        Pixel spacing ``(du, dv)`` in the detector plane.
    origin : tuple of float
        Detector coordinates ``(u0, v0)`` of the centre of pixel (0, 0).
    """

    data: torch.Tensor
    spacing: Tuple[float, float] = (1.0, 1.0)
    origin: Tuple[float, float] = (0.0, 0.0)

    def __post_init__(self):
        data = _as_cpu_tensor(self.data)
        _validate_3d_memory_layout(data, expected_order="VHW")
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "spacing", _check_spacing(self.spacing, 2, "detector spacing"))
        object.__setattr__(self, "origin", _check_origin(self.origin, 2, "detector origin"))

    @classmethod
    def centered(cls, data, spacing=(1.0, 1.0)):
        """Build a stack whose detector centre sits at coordinate (0, 0)."""
        data = _as_cpu_tensor(data)
        _validate_3d_memory_layout(data, expected_order="VHW")
        du, dv = _check_spacing(spacing, 2, "detector spacing")
        _, rows, columns = data.shape
        origin = (-0.5 * (columns - 1) * du, -0.5 * (rows - 1) * dv)
        return cls(data, (du, dv), origin)

    @property
    def projection_count(self):
        return int(self.data.shape[0])

    @property
    def rows(self):
        return int(self.data.shape[1])

    @property
    def columns(self):
        return int(self.data.shape[2])

    def u_coordinates(self):
        """Detector u-coordinates of the pixel columns."""
        return self.origin[0] + np.arange(self.columns) * self.spacing[0]

    def v_coordinates(self):
        """Detector v-coordinates of the pixel rows."""
        return self.origin[1] + np.arange(self.rows) * self.spacing[1]

    def with_data(self, data):
        """Return a stack with the same metadata and new pixel values."""
        return ProjectionStack(data, self.spacing, self.origin)


@dataclass(frozen=True)
class VolumeGeometry:
    """Regular reconstruction grid.

    Parameters
    ----------
    size : tuple of int
        Number of voxels ``(nx, ny, nz)``.
    spacing : tuple of float
        Voxel spacing ``(sx, sy, sz)``.
    origin : tuple of float
        Physical position ``(x0, y0, z0)`` of the centre of the first voxel.
    """

    size: Tuple[int, int, int]
    spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    def __post_init__(self):
        try:
            size = tuple(int(n) for n in self.size)
        except TypeError as exc:
            raise InvalidGeometryError("volume size must be a sequence of 3 ints") from exc
        if len(size) != 3 or min(size) < 1:
            raise InvalidGeometryError(f"volume size must contain 3 positive ints, got {self.size}")
        object.__setattr__(self, "size", size)
        object.__setattr__(self, "spacing", _check_spacing(self.spacing, 3, "voxel spacing"))
        object.__setattr__(self, "origin", _check_origin(self.origin, 3, "volume origin"))

    @classmethod
    def centered(cls, size, spacing=(1.0, 1.0, 1.0)):
        """Build a grid centred on the isocenter."""
        size = tuple(int(n) for n in size)
        spacing = _check_spacing(spacing, 3, "voxel spacing")
        origin = tuple(-0.5 * (n - 1) * s for n, s in zip(size, spacing))
        return cls(size, spacing, origin)

    @property
    def array_shape(self):
        """Tensor shape ``(nz, ny, nx)`` of volumes on this grid."""
        nx, ny, nz = self.size
        return (nz, ny, nx)

    @property
    def voxel_count(self):
        nx, ny, nz = self.size
        return nx * ny * nz


@dataclass(frozen=True)
class Volume:
    """Reconstructed scalar volume and the grid it is sampled on."""

    data: torch.Tensor
    geometry: VolumeGeometry

    def __post_init__(self):
        if tuple(self.data.shape) != self.geometry.array_shape:
            raise InvalidGeometryError(
                f"volume data of shape {tuple(self.data.shape)} does not match "
                f"grid shape {self.geometry.array_shape}"
            )

    def numpy(self):
        """Return the voxel values as a numpy array (shared memory)."""
        return self.data.numpy()
