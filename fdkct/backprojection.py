"""Voxel-driven cone-beam backprojection of filtered projections.

:class:`BackProjector` accumulates filtered projections into a volume;
:class:`VarianceBackProjector` accumulates filtered pixel variances with
squared weights into a variance volume on the same grid.
"""

import contextlib
import logging
import threading

import numba
import numpy as np
import torch

from .constants import _ACCUM_DTYPE
from .exceptions import ConfigurationError
from .geometry import angular_weights, as_snapshot
from .images import Volume
from .kernels import _cone_3d_backproject_kernel
from .utils import _allocate, _trig_tables, log_step

logger = logging.getLogger(__name__)

# The workqueue threading layer aborts the process when two threads enter
# parallel regions at the same time
_WORKQUEUE_LOCK = threading.Lock()


def _kernel_lock():
    """Return the lock guarding kernel launches under the active threading layer.

    ``numba.threading_layer()`` raises ``ValueError`` until the first
    parallel region has run. The layer that will be picked is unknown at that
    point, so the launch is serialised as if it were ``workqueue``.
    """
    try:
        layer = numba.threading_layer()
    except ValueError:
        return _WORKQUEUE_LOCK
    if layer == "workqueue":
        return _WORKQUEUE_LOCK
    return contextlib.nullcontext()


def _kernel_arrays(*arrays):
    """Writable contiguous float64 copies of read-only geometry arrays."""
    return tuple(np.array(a, dtype=_ACCUM_DTYPE, order="C") for a in arrays)


def _kernel_input(tensor, what):
    """Return `tensor` as a contiguous float64 array for the kernel.

    Float64 contiguous tensors are shared; anything else is copied into a
    buffer obtained from :func:`~fdkct.utils._allocate`, so precision is never
    lowered and allocation failures surface as ``ResourceExhaustedError``.
    """
    tensor = tensor.detach()
    if tensor.dtype == torch.float64 and tensor.is_contiguous():
        return tensor.numpy()
    buffer = _allocate(tensor.shape, torch.float64, what)
    buffer.copy_(tensor)
    return buffer.numpy()


@contextlib.contextmanager
def _thread_limit(num_threads):
    """Bound the Numba worker threads used by the calling thread."""
    if num_threads is None:
        yield
        return
    previous = numba.get_num_threads()
    numba.set_num_threads(min(num_threads, numba.config.NUMBA_NUM_THREADS))
    try:
        yield
    finally:
        numba.set_num_threads(previous)


class BackProjector:
    """Backprojection stage of the FDK pipeline.

    Parameters
    ----------
    geometry : GeometrySnapshot or ProjectionGeometry
        Acquisition geometry, one record per projection.
    volume_geometry : VolumeGeometry
        Reconstruction grid.
    config : ReconstructionConfig
        Provides the worker thread bound.
    """

    variance = False

    def __init__(self, geometry, volume_geometry, config):
        self.geometry = as_snapshot(geometry)
        self.volume_geometry = volume_geometry
        self.config = config
        weights = angular_weights(self.geometry.angles)
        weights.setflags(write=False)
        self.view_weights = weights

    def compute(self, filtered, stack):
        """Backproject filtered projections.

        Parameters
        ----------
        filtered : torch.Tensor
            Filtered projections, shape (n_projections, rows, columns).
        stack : ProjectionStack
            Stack the projections were derived from (detector metadata).

        Returns
        -------
        Volume
            Freshly allocated float32 volume.
        """
        return self._run(filtered, None, stack)

    def _run(self, values, covariance, stack):
        snapshot = self.geometry
        n_views, n_v, n_u = values.shape
        if n_views != len(snapshot):
            raise ConfigurationError(f"{len(snapshot)} geometry records for {n_views} projections")
        if (n_v, n_u) != (stack.rows, stack.columns):
            raise ConfigurationError(
                f"projection size {(n_v, n_u)} does not match detector size {(stack.rows, stack.columns)}"
            )

        grid = self.volume_geometry
        nx, ny, nz = grid.size
        d_proj = _kernel_input(values, "backprojection input")
        if covariance is None:
            d_cov = np.zeros((1, 1, 1), dtype=_ACCUM_DTYPE)
        else:
            d_cov = _kernel_input(covariance, "backprojection covariance")

        volume = _allocate(grid.array_shape, torch.float32, "variance volume" if self.variance else "volume")
        d_vol = volume.numpy()
        d_cos, d_sin = _trig_tables(snapshot.angles, dtype=_ACCUM_DTYPE)

        name = "variance backprojection" if self.variance else "backprojection"
        with log_step(name, logger), _kernel_lock(), _thread_limit(self.config.num_threads):
            _cone_3d_backproject_kernel(
                d_proj, d_cov, n_views, n_v, n_u,
                d_vol, nx, ny, nz,
                stack.origin[0], stack.origin[1], stack.spacing[0], stack.spacing[1],
                d_cos, d_sin,
                *_kernel_arrays(snapshot.sid, snapshot.sdd, snapshot.offset_u, snapshot.offset_v, self.view_weights),
                grid.origin[0], grid.origin[1], grid.origin[2],
                grid.spacing[0], grid.spacing[1], grid.spacing[2],
                self.variance,
            )
        return Volume(volume, grid)


class VarianceBackProjector(BackProjector):
    """Backprojection stage of the variance pipeline.

    Every linear coefficient of :class:`BackProjector` enters squared:
    bilinear weights, magnification weight and angular weight. The
    covariance of the two interpolated detector columns is included, so the
    result is the exact variance of the FDK voxel for independent pixel
    noise.
    """

    variance = True

    def compute(self, variance, covariance, stack):
        """Backproject filtered variances.

        Parameters
        ----------
        variance : torch.Tensor
            Variance of every filtered sample, shape (n_projections, rows, columns).
        covariance : torch.Tensor
            Covariance of filtered samples ``k`` and ``k + 1`` of each row.
        stack : ProjectionStack
            Variance stack (detector metadata).

        Returns
        -------
        Volume
            Freshly allocated float32 variance volume.
        """
        if tuple(covariance.shape) != tuple(variance.shape):
            raise ConfigurationError(
                f"covariance shape {tuple(covariance.shape)} differs from variance shape {tuple(variance.shape)}"
            )
        return self._run(variance, covariance, stack)
