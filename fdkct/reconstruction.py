"""FDK and variance reconstruction pipelines.

Both orchestrators drive the same sequence of stages::

    UNINITIALIZED -> GEOMETRY_BOUND -> WEIGHTING -> RAMP_FILTERING
                  -> BACKPROJECTING -> COMPLETE

A run binds an immutable geometry snapshot, so the FDK and the variance
pipelines may share one :class:`~fdkct.geometry.ProjectionGeometry` and run
at the same time on separate threads. Kernel launches are serialised when
Numba runs on its ``workqueue`` threading layer. Every run owns its intermediate
buffers and returns a freshly allocated volume; a failed or cancelled run
returns nothing.
"""

import enum
import logging

import torch

from .backprojection import BackProjector, VarianceBackProjector
from .config import ReconstructionConfig
from .exceptions import (
    ConfigurationError,
    InvalidParameterError,
    ReconstructionCancelled,
    ReconstructionStateError,
)
from .filters import RampFilter, VarianceRampFilter
from .geometry import as_snapshot
from .images import VolumeGeometry
from .utils import log_step
from .weighting import ConeBeamWeighting

logger = logging.getLogger(__name__)


class ReconstructionState(enum.Enum):
    """Stages of a reconstruction run, in execution order."""

    UNINITIALIZED = 0
    GEOMETRY_BOUND = 1
    WEIGHTING = 2
    RAMP_FILTERING = 3
    BACKPROJECTING = 4
    COMPLETE = 5


class _RunState:
    """Sequential state tracker of a single run."""

    def __init__(self, name, cancel_event=None, state_callback=None):
        self.name = name
        self.state = ReconstructionState.UNINITIALIZED
        self._cancel_event = cancel_event
        self._state_callback = state_callback

    def advance(self, state):
        """Move to `state`, which must directly follow the current one."""
        if state.value != self.state.value + 1:
            raise ReconstructionStateError(
                f"{self.name}: illegal transition {self.state.name} -> {state.name}"
            )
        if self._cancel_event is not None and self._cancel_event.is_set():
            logger.info("%s cancelled in state %s", self.name, self.state.name)
            raise ReconstructionCancelled(f"{self.name} cancelled before {state.name}")
        self.state = state
        logger.debug("%s: %s", self.name, state.name)
        if self._state_callback is not None:
            self._state_callback(state)


class FDKReconstruction:
    """Feldkamp-Davis-Kress reconstruction of circular cone-beam data.

    Parameters
    ----------
    geometry : ProjectionGeometry, GeometrySnapshot or sequence of GeometryRecord
        One record per projection. A snapshot is taken at construction, so
        later appends to a :class:`ProjectionGeometry` do not affect this
        reconstruction.
    volume_geometry : VolumeGeometry
        Reconstruction grid.
    config : ReconstructionConfig, optional
        Filter and scheduling options (default: Ram-Lak, full scan).

    Examples
    --------
    >>> geometry = circular_geometry(360, 600.0, 1200.0)
    >>> grid = VolumeGeometry.centered((128, 128, 64), (0.5, 0.5, 0.5))
    >>> fdk = FDKReconstruction(geometry, grid, ReconstructionConfig(filter_type="hann"))
    >>> volume = fdk.compute(ProjectionStack.centered(projections, (1.0, 1.0)))  # doctest: +SKIP
    """

    name = "FDK reconstruction"
    backprojector_class = BackProjector

    def __init__(self, geometry, volume_geometry, config=None):
        if not isinstance(volume_geometry, VolumeGeometry):
            raise ConfigurationError(f"expected VolumeGeometry, got {type(volume_geometry).__name__}")
        if config is None:
            config = ReconstructionConfig()
        elif not isinstance(config, ReconstructionConfig):
            raise ConfigurationError(f"expected ReconstructionConfig, got {type(config).__name__}")
        self.geometry = as_snapshot(geometry)
        self.volume_geometry = volume_geometry
        self.config = config

    def compute(self, stack, cancel_event=None, state_callback=None):
        """Run the pipeline on a projection stack.

        Parameters
        ----------
        stack : ProjectionStack
            Input projections, one per geometry record.
        cancel_event : threading.Event, optional
            When set, the run stops at the next state transition.
        state_callback : callable, optional
            Called with every :class:`ReconstructionState` the run enters.

        Returns
        -------
        Volume
            The reconstructed volume.

        Raises
        ------
        ConfigurationError
            If the projection and geometry record counts differ. Raised
            before any buffer is allocated.
        ReconstructionCancelled
            If `cancel_event` is set before the run completes.
        ResourceExhaustedError
            If an intermediate buffer or the volume cannot be allocated.
        """
        run = _RunState(self.name, cancel_event, state_callback)
        with log_step(self.name, logger, logging.INFO):
            self._bind(stack, run)

            weighting = ConeBeamWeighting(self.geometry, self.config)
            run.advance(ReconstructionState.WEIGHTING)
            weighted = self._weight(weighting, stack)

            run.advance(ReconstructionState.RAMP_FILTERING)
            filtered = self._filter(weighted, stack)
            del weighted

            run.advance(ReconstructionState.BACKPROJECTING)
            backprojector = self.backprojector_class(self.geometry, self.volume_geometry, self.config)
            volume = self._backproject(backprojector, filtered, stack)
            del filtered

            run.advance(ReconstructionState.COMPLETE)
        return volume

    def _bind(self, stack, run):
        n_records = len(self.geometry)
        if stack.projection_count != n_records:
            raise ConfigurationError(
                f"{self.name}: {n_records} geometry records for {stack.projection_count} projections"
            )
        run.advance(ReconstructionState.GEOMETRY_BOUND)
        logger.info(
            "%s: %d projections of %dx%d pixels onto a %dx%dx%d grid",
            self.name, n_records, stack.rows, stack.columns, *self.volume_geometry.size,
        )

    def _weight(self, weighting, stack):
        return weighting.compute(stack)

    def _filter(self, weighted, stack):
        return RampFilter(self.config, stack.columns).compute(weighted)

    def _backproject(self, backprojector, filtered, stack):
        return backprojector.compute(filtered, stack)


class VarianceReconstruction(FDKReconstruction):
    """Analytic variance of an FDK reconstruction.

    The input stack holds the variance of every projection pixel, assumed
    independent between pixels. For photon-counting data under Poisson shot
    noise the variance equals the expected count, so the mean projections can
    be passed directly. The result is the exact variance of every voxel of
    :class:`FDKReconstruction` run with the same geometry, grid and
    configuration.

    Raises
    ------
    InvalidParameterError
        From :meth:`compute` when the variance stack holds negative or
        non-finite values.
    """

    name = "variance reconstruction"
    backprojector_class = VarianceBackProjector

    def _bind(self, stack, run):
        if not bool(torch.isfinite(stack.data).all()):
            raise InvalidParameterError(f"{self.name}: pixel variances must be finite")
        if bool(torch.any(stack.data < 0)):
            raise InvalidParameterError(f"{self.name}: pixel variances must be non-negative")
        super()._bind(stack, run)

    def _weight(self, weighting, stack):
        return weighting.compute_variance(stack)

    def _filter(self, weighted, stack):
        ramp = RampFilter(self.config, stack.columns)
        return VarianceRampFilter(ramp).compute(weighted)

    def _backproject(self, backprojector, filtered, stack):
        variance, covariance = filtered
        return backprojector.compute(variance, covariance, stack)
