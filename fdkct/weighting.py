"""Cone-beam projection weighting.

Before ramp filtering every projection pixel is multiplied by the cosine of
the angle between its ray and the central ray, by the inverse isocenter pixel
width (which turns the pixel-unit ramp kernel into physical units) and,
optionally, by a Parker short-scan weight. The variance pipeline applies the
squares of the same factors.
"""

import logging
import math

import numpy as np
import torch

from .exceptions import ConfigurationError
from .geometry import angular_range, as_snapshot, is_full_scan
from .utils import _allocate, log_step

logger = logging.getLogger(__name__)


def parker_weight(beta, gamma, delta):
    """Evaluate the Parker short-scan weight.

    Parameters
    ----------
    beta : array-like
        Gantry angle relative to the start of the scan, in radians.
    gamma : array-like
        Fan angle of the ray, positive towards the detector u-axis.
    delta : float
        Half of the overscan beyond pi, ``(covered_range - pi) / 2``.

    Returns
    -------
    numpy.ndarray
        Weights in [0, 1]; conjugate rays ``(beta, gamma)`` and
        ``(beta + pi + 2 gamma, -gamma)`` sum to one.
    """
    beta, gamma = np.broadcast_arrays(np.asarray(beta, dtype=np.float64),
                                      np.asarray(gamma, dtype=np.float64))
    weights = np.zeros(beta.shape)
    rise = delta - gamma
    fall = delta + gamma

    ramp_up = (beta < 2.0 * rise) & (rise > 0.0)
    weights[ramp_up] = np.sin(0.25 * math.pi * beta[ramp_up] / rise[ramp_up]) ** 2

    plateau = (beta >= 2.0 * rise) & (beta <= math.pi - 2.0 * gamma)
    weights[plateau] = 1.0

    ramp_down = (beta > math.pi - 2.0 * gamma) & (beta <= math.pi + 2.0 * delta) & (fall > 0.0)
    weights[ramp_down] = np.sin(0.25 * math.pi * (math.pi + 2.0 * delta - beta[ramp_down])
                                / fall[ramp_down]) ** 2
    return weights


def short_scan_weights(snapshot, u_coordinates):
    """Compute Parker weights for every projection column.

    Parameters
    ----------
    snapshot : GeometrySnapshot
        Acquisition geometry.
    u_coordinates : numpy.ndarray
        Detector u-coordinates of the pixel columns.

    Returns
    -------
    numpy.ndarray or None
        Array of shape (n_projections, columns) holding twice the Parker
        weight, or None for full-scan acquisitions.
    """
    if is_full_scan(snapshot.angles):
        logger.info("full-scan acquisition, Parker weighting skipped")
        return None

    covered, first = angular_range(snapshot.angles)
    delta = 0.5 * (covered - math.pi)
    beta = np.mod(snapshot.angles - snapshot.angles[first], 2.0 * math.pi)
    u = np.asarray(u_coordinates, dtype=np.float64)[None, :] - snapshot.offset_u[:, None]
    gamma = np.arctan(u / snapshot.sdd[:, None])

    half_fan = float(np.abs(gamma).max())
    if delta < half_fan:
        logger.warning(
            "short scan covers %.2f deg, less than pi plus the fan angle (%.2f deg); "
            "Parker weighting cannot compensate all missing data",
            math.degrees(covered), math.degrees(math.pi + 2.0 * half_fan),
        )
    logger.debug("Parker weighting: covered range %.3f rad, delta %.4f rad", covered, delta)
    return 2.0 * parker_weight(beta[:, None], gamma, delta)


class ConeBeamWeighting:
    """Pre-filtering weighting stage of the FDK and variance pipelines.

    Parameters
    ----------
    geometry : GeometrySnapshot or ProjectionGeometry
        Acquisition geometry, one record per projection.
    config : ReconstructionConfig
        Provides the short-scan switch and the batch size.

    Notes
    -----
    The stage is stateless apart from its immutable configuration: every call
    to :meth:`compute` or :meth:`compute_variance` allocates a fresh output.
    """

    def __init__(self, geometry, config):
        self.geometry = as_snapshot(geometry)
        self.config = config

    def weights(self, stack, first=0, last=None, parker=None):
        """Return the weights of projections ``first:last`` as a float64 tensor.

        The result has shape (n, rows, columns) and includes the cosine
        factor, the inverse isocenter pixel width and, when `parker` is given
        (see :func:`short_scan_weights`), the short-scan weight.
        """
        snapshot = self.geometry
        last = len(snapshot) if last is None else last
        sid = snapshot.sid[first:last, None, None]
        sdd = snapshot.sdd[first:last, None, None]
        u = stack.u_coordinates()[None, None, :] - snapshot.offset_u[first:last, None, None]
        v = stack.v_coordinates()[None, :, None] - snapshot.offset_v[first:last, None, None]

        # sdd / sqrt(sdd^2 + u^2 + v^2) equals the isocenter-plane cosine
        # sid / sqrt(sid^2 + u_iso^2 + v_iso^2)
        weights = sdd / np.sqrt(sdd * sdd + u * u + v * v)
        weights = weights * (sdd / (sid * stack.spacing[0]))

        if parker is not None:
            weights = weights * parker[first:last, None, :]
        return torch.from_numpy(np.ascontiguousarray(weights, dtype=np.float64))

    def compute(self, stack):
        """Weight the projections of `stack`.

        Returns
        -------
        torch.Tensor
            float64 tensor of the same shape as ``stack.data``.
        """
        return self._apply(stack, squared=False)

    def compute_variance(self, stack):
        """Weight a stack of pixel variances with the squared weights."""
        return self._apply(stack, squared=True)

    def _apply(self, stack, squared):
        if stack.projection_count != len(self.geometry):
            raise ConfigurationError(
                f"{len(self.geometry)} geometry records for {stack.projection_count} projections"
            )
        parker = None
        if self.config.short_scan:
            parker = short_scan_weights(self.geometry, stack.u_coordinates())
        out = _allocate(stack.data.shape, torch.float64, "weighted projections")
        chunk = self.config.projection_chunk
        with log_step("cone-beam weighting" + (" (squared)" if squared else ""), logger):
            for first in range(0, stack.projection_count, chunk):
                last = min(first + chunk, stack.projection_count)
                weights = self.weights(stack, first, last, parker)
                if squared:
                    weights = weights * weights
                out[first:last] = stack.data[first:last].to(torch.float64) * weights
        return out
