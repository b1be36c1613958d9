# fdkct/__init__.py
"""fdkct - Analytic Cone-Beam CT Reconstruction.

FDK reconstruction of circular cone-beam projections and analytic
propagation of projection noise into a per-voxel variance volume, built with
PyTorch FFTs and parallel Numba CPU kernels.
"""

from .config import FilterType, ReconstructionConfig

from .exceptions import (
    ReconstructionError,
    ConfigurationError,
    InvalidParameterError,
    InvalidGeometryError,
    ResourceExhaustedError,
    ReconstructionStateError,
    ReconstructionCancelled,
)

from .geometry import (
    GeometryRecord,
    ProjectionGeometry,
    GeometrySnapshot,
    circular_geometry,
    angular_gaps,
    angular_range,
    angular_weights,
    is_full_scan,
)

from .images import ProjectionStack, VolumeGeometry, Volume

from .weighting import ConeBeamWeighting, parker_weight, short_scan_weights

from .filters import (
    RampFilter,
    VarianceRampFilter,
    apodization_window,
    kernel_length,
    ramp_kernel,
    variance_kernel,
    covariance_kernel,
    squared_impulse_response,
    lag_one_product,
)

from .backprojection import BackProjector, VarianceBackProjector

from .reconstruction import (
    ReconstructionState,
    FDKReconstruction,
    VarianceReconstruction,
)

__version__ = '0.1.0'

__all__ = [
    'FilterType',
    'ReconstructionConfig',
    'ReconstructionError',
    'ConfigurationError',
    'InvalidParameterError',
    'InvalidGeometryError',
    'ResourceExhaustedError',
    'ReconstructionStateError',
    'ReconstructionCancelled',
    'GeometryRecord',
    'ProjectionGeometry',
    'GeometrySnapshot',
    'circular_geometry',
    'angular_gaps',
    'angular_range',
    'angular_weights',
    'is_full_scan',
    'ProjectionStack',
    'VolumeGeometry',
    'Volume',
    'ConeBeamWeighting',
    'parker_weight',
    'short_scan_weights',
    'RampFilter',
    'VarianceRampFilter',
    'apodization_window',
    'kernel_length',
    'ramp_kernel',
    'variance_kernel',
    'covariance_kernel',
    'squared_impulse_response',
    'lag_one_product',
    'BackProjector',
    'VarianceBackProjector',
    'ReconstructionState',
    'FDKReconstruction',
    'VarianceReconstruction',
]
