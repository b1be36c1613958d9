"""Numba kernels for 3D cone beam backprojection.

This module contains the voxel-driven backprojection kernel shared by the
FDK and the variance pipelines. Voxel rows are distributed over worker
threads; each thread owns its voxels, so no atomic updates are required.
"""

import math
from numba import prange

from ..constants import _PARALLEL_DECORATOR, _EPSILON


# ============================================================================
# 3D Cone Beam Backprojection Kernel
# ============================================================================

@_PARALLEL_DECORATOR
def _cone_3d_backproject_kernel(
    d_proj, d_cov, n_views, n_v, n_u,
    d_vol, Nx, Ny, Nz,
    u0, v0, du, dv,
    d_cos, d_sin, d_sid, d_sdd, d_off_u, d_off_v, d_view_weight,
    x0, y0, z0, sx, sy, sz,
    variance
):
    """Backproject filtered cone-beam projections onto a voxel grid.

    Parameters
    ----------
    d_proj : numpy.ndarray
        Filtered projections (or filtered variances), shape (n_views, n_v, n_u).
    d_cov : numpy.ndarray
        Covariance between horizontally adjacent filtered samples, stored at
        the left sample, shape (n_views, n_v, n_u). Only read when
        `variance` is True.
    n_views : int
        Number of projection views.
    n_v : int
        Number of detector rows.
    n_u : int
        Number of detector columns.
    d_vol : numpy.ndarray
        Output volume, shape (Nz, Ny, Nx). Every voxel is overwritten.
    Nx, Ny, Nz : int
        Number of voxels along the x-, y- and z-axis.
    u0, v0 : float
        Detector coordinates of the centre of pixel (0, 0).
    du, dv : float
        Detector pixel spacing along u and v.
    d_cos, d_sin : numpy.ndarray
        Cosine and sine of the gantry angle of every view.
    d_sid, d_sdd : numpy.ndarray
        Source-to-isocenter and source-to-detector distance of every view.
    d_off_u, d_off_v : numpy.ndarray
        Detector coordinates of the central ray of every view.
    d_view_weight : numpy.ndarray
        Angular integration weight of every view.
    x0, y0, z0 : float
        Physical position of the centre of voxel (0, 0, 0).
    sx, sy, sz : float
        Voxel spacing.
    variance : bool
        Propagate variances: all weights are squared and the covariance of
        the two interpolated columns is added.

    Notes
    -----
    Each voxel is projected through the source onto the flat detector and
    the detector is sampled by bilinear interpolation. Neighbours outside the
    detector contribute zero. The sample is scaled by ``(sid / U)**2`` where
    ``U`` is the distance from the source to the voxel along the central ray,
    and by the angular weight of the view. Sums are accumulated in float64.
    """
    for row in prange(Nz * Ny):
        iz = row // Ny
        iy = row - iz * Ny
        z = z0 + iz * sz
        y = y0 + iy * sy

        for ix in range(Nx):
            x = x0 + ix * sx
            accum = 0.0

            for iview in range(n_views):
                cos_a = d_cos[iview]
                sin_a = d_sin[iview]
                sid = d_sid[iview]

                # === PERSPECTIVE PROJECTION THROUGH THE SOURCE ===
                # Distance from the source along the central ray
                depth = sid + x * sin_a - y * cos_a
                if depth < _EPSILON:
                    continue
                mag = d_sdd[iview] / depth
                u = (x * cos_a + y * sin_a) * mag + d_off_u[iview]
                v = z * mag + d_off_v[iview]

                # Continuous detector pixel indices
                fu = (u - u0) / du
                fv = (v - v0) / dv
                if fu <= -1.0 or fu >= n_u or fv <= -1.0 or fv >= n_v:
                    continue
                iu = int(math.floor(fu))
                iv = int(math.floor(fv))
                a1 = fu - iu
                a0 = 1.0 - a1
                b1 = fv - iv
                b0 = 1.0 - b1

                # Divergent-beam magnification weight (sid / U)^2
                geometric = sid / depth
                weight = d_view_weight[iview] * geometric * geometric

                # === BILINEAR DETECTOR SAMPLING ===
                sample = 0.0
                for k in range(2):
                    r = iv + k
                    if r < 0 or r >= n_v:
                        continue
                    b = b1 if k == 1 else b0
                    if variance:
                        row_val = 0.0
                        left = iu >= 0
                        right = iu + 1 < n_u
                        if left:
                            row_val += a0 * a0 * d_proj[iview, r, iu]
                        if right:
                            row_val += a1 * a1 * d_proj[iview, r, iu + 1]
                        if left and right:
                            row_val += 2.0 * a0 * a1 * d_cov[iview, r, iu]
                        sample += b * b * row_val
                    else:
                        row_val = 0.0
                        if iu >= 0:
                            row_val += a0 * d_proj[iview, r, iu]
                        if iu + 1 < n_u:
                            row_val += a1 * d_proj[iview, r, iu + 1]
                        sample += b * row_val

                if variance:
                    accum += weight * weight * sample
                else:
                    accum += weight * sample

            d_vol[iz, iy, ix] = accum
