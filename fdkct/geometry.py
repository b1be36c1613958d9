"""Acquisition geometry for circular cone-beam CT.

This module provides the append-only geometry model, the immutable snapshot
that reconstruction runs bind to, circular orbit generation, and the angular
sampling helpers used for non-uniform and short-scan weighting.

Coordinate convention: the gantry rotates about the z-axis. At angle ``a``
the source sits at ``sid * (-sin a, cos a, 0)``, the detector u-axis points
along ``(cos a, sin a, 0)`` and the v-axis along ``(0, 0, 1)``.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Tuple

import numpy as np

from .exceptions import InvalidGeometryError

logger = logging.getLogger(__name__)

_TWO_PI = 2.0 * math.pi

# Largest angular gap of an acquisition that still counts as a full rotation
FULL_SCAN_GAP_THRESHOLD = math.radians(20.0)


@dataclass(frozen=True)
class GeometryRecord:
    """Acquisition parameters of a single projection.

    Attributes
    ----------
    angle : float
        Gantry rotation angle in radians.
    sid : float
        Source-to-isocenter distance.
    sdd : float
        Source-to-detector distance.
    offset_u : float
        Detector u-coordinate hit by the central ray (detector plane units).
    offset_v : float
        Detector v-coordinate hit by the central ray (detector plane units).
    """

    angle: float
    sid: float
    sdd: float
    offset_u: float = 0.0
    offset_v: float = 0.0

    def __post_init__(self):
        values = (self.angle, self.sid, self.sdd, self.offset_u, self.offset_v)
        if not all(math.isfinite(float(v)) for v in values):
            raise InvalidGeometryError(f"geometry values must be finite, got {values}")
        if self.sid <= 0.0:
            raise InvalidGeometryError(f"source-to-isocenter distance must be positive, got {self.sid}")
        if self.sdd <= self.sid:
            raise InvalidGeometryError(
                f"source-to-detector distance ({self.sdd}) must exceed "
                f"source-to-isocenter distance ({self.sid})"
            )

    @property
    def magnification(self):
        """Isocenter-to-detector magnification ``sdd / sid``."""
        return self.sdd / self.sid


class ProjectionGeometry:
    """Ordered, append-only sequence of projection geometry records.

    The position of a record defines which projection of the stack it
    describes. Reconstruction runs never read this object directly; they bind
    an immutable :class:`GeometrySnapshot` obtained from :meth:`snapshot`.

    Examples
    --------
    >>> geometry = ProjectionGeometry()
    >>> geometry.add_projection(0.0, 600.0, 1200.0)
    >>> geometry.record_count()
    1
    """

    def __init__(self, records: Iterable[GeometryRecord] = ()):
        self._records = []
        for record in records:
            if not isinstance(record, GeometryRecord):
                raise InvalidGeometryError(f"expected GeometryRecord, got {type(record).__name__}")
            self._records.append(record)

    def add_projection(self, angle, sid, sdd, offset_u=0.0, offset_v=0.0, degrees=False):
        """Append the geometry of one projection.

        Parameters
        ----------
        angle : float
            Gantry angle, in radians unless `degrees` is True.
        sid : float
            Source-to-isocenter distance, must be positive.
        sdd : float
            Source-to-detector distance, must exceed `sid`.
        offset_u, offset_v : float, optional
            Detector coordinates of the central ray (default: 0.0).
        degrees : bool, optional
            Interpret `angle` in degrees (default: False).

        Raises
        ------
        InvalidGeometryError
            If ``sid <= 0``, ``sdd <= sid`` or any value is not finite.
        """
        try:
            values = [float(v) for v in (angle, sid, sdd, offset_u, offset_v)]
        except (TypeError, ValueError) as exc:
            raise InvalidGeometryError(f"geometry values must be numbers: {exc}") from exc
        if degrees:
            values[0] = math.radians(values[0])
        self._records.append(GeometryRecord(*values))

    def record_count(self):
        """Return the number of records appended so far."""
        return len(self._records)

    def __len__(self):
        return len(self._records)

    def __getitem__(self, index):
        return self._records[index]

    def __iter__(self):
        return iter(self._records)

    def snapshot(self):
        """Return an immutable copy of the current records."""
        return GeometrySnapshot(tuple(self._records))


class GeometrySnapshot:
    """Immutable view of a geometry, shared read-only between runs.

    Besides index access to the records it exposes read-only numpy arrays of
    every parameter, which the weighting and backprojection stages consume.
    """

    __slots__ = ("_records", "angles", "sid", "sdd", "offset_u", "offset_v")

    def __init__(self, records: Tuple[GeometryRecord, ...]):
        records = tuple(records)
        object.__setattr__(self, "_records", records)
        for name in ("angle", "sid", "sdd", "offset_u", "offset_v"):
            values = np.array([getattr(r, name) for r in records], dtype=np.float64)
            values.setflags(write=False)
            object.__setattr__(self, "angles" if name == "angle" else name, values)

    def __setattr__(self, name, value):
        raise AttributeError("GeometrySnapshot is immutable")

    def __len__(self):
        return len(self._records)

    def __getitem__(self, index):
        return self._records[index]

    def __iter__(self):
        return iter(self._records)

    def record_count(self):
        return len(self._records)

    @property
    def isocenter_scale(self):
        """Per-projection factor ``sid / sdd`` mapping detector to isocenter units."""
        return self.sid / self.sdd

    def detector_frames(self):
        """Compute source positions and detector frames for every projection.

        Returns
        -------
        src_pos : numpy.ndarray
            Source positions, shape (n_views, 3).
        det_center : numpy.ndarray
            Positions where the central ray hits the detector, shape (n_views, 3).
        det_u_vec : numpy.ndarray
            Detector u-direction unit vectors, shape (n_views, 3).
        det_v_vec : numpy.ndarray
            Detector v-direction unit vectors, shape (n_views, 3).
        """
        n_views = len(self)
        cos_angles = np.cos(self.angles)
        sin_angles = np.sin(self.angles)

        src_pos = np.zeros((n_views, 3))
        det_center = np.zeros((n_views, 3))
        det_u_vec = np.zeros((n_views, 3))
        det_v_vec = np.zeros((n_views, 3))

        # Source rotates around isocenter at distance sid
        src_pos[:, 0] = -self.sid * sin_angles
        src_pos[:, 1] = self.sid * cos_angles

        # Detector plane lies at distance (sdd - sid) beyond the isocenter
        idd = self.sdd - self.sid
        det_center[:, 0] = idd * sin_angles
        det_center[:, 1] = -idd * cos_angles

        # Detector u-direction (tangent to rotation, in xy-plane)
        det_u_vec[:, 0] = cos_angles
        det_u_vec[:, 1] = sin_angles

        # Detector v-direction (vertical, along z-axis)
        det_v_vec[:, 2] = 1.0

        return src_pos, det_center, det_u_vec, det_v_vec


def as_snapshot(geometry):
    """Return `geometry` as a :class:`GeometrySnapshot`.

    Accepts a snapshot, a :class:`ProjectionGeometry` or any iterable of
    :class:`GeometryRecord` objects.
    """
    if isinstance(geometry, GeometrySnapshot):
        return geometry
    if isinstance(geometry, ProjectionGeometry):
        return geometry.snapshot()
    return ProjectionGeometry(geometry).snapshot()


def circular_geometry(n_views, sid, sdd, start_angle=0.0, arc=_TWO_PI, offset_u=0.0, offset_v=0.0):
    """Generate a uniformly sampled circular orbit.

    Parameters
    ----------
    n_views : int
        Number of projection views.
    sid : float
        Source-to-Isocenter Distance (SID), in physical units.
    sdd : float
        Source-to-Detector Distance (SDD), in physical units.
    start_angle : float, optional
        Starting angle in radians (default: 0.0).
    arc : float, optional
        Angular extent in radians, sampled without its end point
        (default: 2*pi, full rotation).
    offset_u, offset_v : float, optional
        Detector offsets applied to every record (default: 0.0).

    Returns
    -------
    ProjectionGeometry
        Geometry with `n_views` records.

    Examples
    --------
    >>> geometry = circular_geometry(180, 600.0, 1200.0)
    >>> round(geometry[1].angle, 6)
    0.034907
    """
    if int(n_views) < 1:
        raise InvalidGeometryError(f"n_views must be positive, got {n_views}")
    geometry = ProjectionGeometry()
    step = arc / n_views
    for i in range(int(n_views)):
        geometry.add_projection(start_angle + i * step, sid, sdd, offset_u, offset_v)
    return geometry


# ============================================================================
# Angular Sampling
# ============================================================================

def angular_gaps(angles):
    """Return the gap from each projection to the next one in angular order.

    Angles are reduced modulo 2*pi; the gap of the last projection in sorted
    order wraps around to the first one.

    Parameters
    ----------
    angles : array-like
        Projection angles in radians.

    Returns
    -------
    gaps : numpy.ndarray
        Gap following each projection, in input order.
    """
    angles = np.mod(np.asarray(angles, dtype=np.float64), _TWO_PI)
    n = angles.size
    if n == 0:
        return np.zeros(0)
    if n == 1:
        return np.full(1, _TWO_PI)
    order = np.argsort(angles, kind="stable")
    sorted_angles = angles[order]
    sorted_gaps = np.empty(n)
    sorted_gaps[:-1] = np.diff(sorted_angles)
    sorted_gaps[-1] = sorted_angles[0] + _TWO_PI - sorted_angles[-1]
    gaps = np.empty(n)
    gaps[order] = sorted_gaps
    return gaps


def is_full_scan(angles):
    """Return True if `angles` sample a full rotation.

    A scan is full when its largest angular gap is at most
    :data:`FULL_SCAN_GAP_THRESHOLD`, or at most twice the median gap (sparse
    but evenly spaced orbits). Any larger gap is the missing arc of a short
    scan.
    """
    gaps = angular_gaps(angles)
    if gaps.size < 2:
        return False
    largest = gaps.max()
    return bool(largest <= FULL_SCAN_GAP_THRESHOLD or largest <= 2.0 * np.median(gaps) + 1e-12)


def angular_range(angles):
    """Return the covered angular range and the first projection of the scan.

    The scan is assumed to start right after the largest angular gap.

    Returns
    -------
    covered : float
        ``2*pi`` minus the largest gap, in radians.
    first : int
        Index (in input order) of the first projection of the scan.
    """
    angles = np.mod(np.asarray(angles, dtype=np.float64), _TWO_PI)
    gaps = angular_gaps(angles)
    order = np.argsort(angles, kind="stable")
    position = int(np.argmax(gaps[order]))
    first = int(order[(position + 1) % order.size])
    return _TWO_PI - float(gaps[order[position]]), first


def angular_weights(angles):
    """Compute the integration weight of every projection.

    Each weight is a quarter of the sum of the gaps to the previous and the
    next projection, which reduces to ``pi / N`` for ``N`` uniformly spaced
    projections over a full rotation. For short scans the wrap-around gap is
    replaced by the step of the neighbouring projection.

    Parameters
    ----------
    angles : array-like
        Projection angles in radians.

    Returns
    -------
    numpy.ndarray
        Weights in input order.
    """
    angles = np.asarray(angles, dtype=np.float64)
    n = angles.size
    if n < 2:
        return np.full(n, math.pi)
    reduced = np.mod(angles, _TWO_PI)
    order = np.argsort(reduced, kind="stable")
    sorted_gaps = angular_gaps(reduced)[order]
    if not is_full_scan(angles):
        # Cap the wrap-around gap at the step of its neighbours
        k = int(np.argmax(sorted_gaps))
        sorted_gaps[k] = 0.5 * (sorted_gaps[k - 1] + sorted_gaps[(k + 1) % n]) if n > 2 else sorted_gaps[k - 1]
        logger.debug("short scan: wrap-around gap after sorted projection %d capped", k)
    previous_gaps = np.roll(sorted_gaps, 1)
    sorted_weights = 0.25 * (previous_gaps + sorted_gaps)
    weights = np.empty(n)
    weights[order] = sorted_weights
    return weights
