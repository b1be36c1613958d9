import numpy as np
import pytest
import torch

from fdkct import (
    ProjectionStack,
    ReconstructionConfig,
    VolumeGeometry,
    circular_geometry,
)


def sphere_projections(geometry, rows, columns, spacing=(1.0, 1.0), radius=20.0,
                       center=(0.0, 0.0, 0.0), density=1.0):
    """Exact cone-beam line integrals of a homogeneous sphere.

    Returns a centered ProjectionStack of shape (n_views, rows, columns).
    """
    snapshot = geometry.snapshot() if hasattr(geometry, "snapshot") else geometry
    src_pos, det_center, det_u_vec, det_v_vec = snapshot.detector_frames()
    du, dv = spacing
    u = (np.arange(columns) - 0.5 * (columns - 1)) * du
    v = (np.arange(rows) - 0.5 * (rows - 1)) * dv

    # Pixel positions, shape (n_views, rows, columns, 3)
    pixels = (det_center[:, None, None, :]
              + (u[None, None, :, None] - snapshot.offset_u[:, None, None, None]) * det_u_vec[:, None, None, :]
              + (v[None, :, None, None] - snapshot.offset_v[:, None, None, None]) * det_v_vec[:, None, None, :])
    direction = pixels - src_pos[:, None, None, :]
    direction /= np.linalg.norm(direction, axis=-1, keepdims=True)

    to_center = np.asarray(center)[None, None, None, :] - src_pos[:, None, None, :]
    along = np.sum(to_center * direction, axis=-1)
    dist2 = np.sum(to_center * to_center, axis=-1) - along * along
    chord = 2.0 * np.sqrt(np.clip(radius * radius - dist2, 0.0, None))
    return ProjectionStack.centered((density * chord).astype(np.float32), spacing)


@pytest.fixture
def small_geometry():
    return circular_geometry(24, 100.0, 200.0)


@pytest.fixture
def small_grid():
    return VolumeGeometry.centered((8, 8, 2), (1.0, 1.0, 1.0))


@pytest.fixture
def small_stack(small_geometry):
    return sphere_projections(small_geometry, 4, 32, radius=4.0)


@pytest.fixture
def hann_config():
    return ReconstructionConfig(filter_type="hann", cutoff_frequency=1.0)


@pytest.fixture
def generator():
    return torch.Generator().manual_seed(1234)


def central_disc(volume, radius):
    """Voxel values of the central z-slice within `radius` of the z-axis."""
    grid = volume.geometry
    nx, ny, nz = grid.size
    x = grid.origin[0] + np.arange(nx) * grid.spacing[0]
    y = grid.origin[1] + np.arange(ny) * grid.spacing[1]
    mask = (x[None, :] ** 2 + y[:, None] ** 2) <= radius * radius
    return volume.numpy()[nz // 2][mask]


