"""Reconstruction configuration.

A :class:`ReconstructionConfig` is validated once, when it is created, so
that malformed options fail before any projection is processed.
"""

import enum
import logging
import math
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

from .constants import _DEFAULT_PROJECTION_CHUNK
from .exceptions import InvalidParameterError

logger = logging.getLogger(__name__)


class FilterType(enum.Enum):
    """Apodization windows applied on top of the ramp response."""

    RAM_LAK = "ram-lak"
    HANN = "hann"
    HAMMING = "hamming"
    COSINE = "cosine"

    @classmethod
    def parse(cls, value):
        """Return the member named by `value`, ignoring case and separators.

        Raises
        ------
        InvalidParameterError
            If `value` names no known window.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().lower().replace("_", "").replace("-", "").replace(" ", "")
            for member in cls:
                if member.value.replace("-", "") == key:
                    return member
        names = ", ".join(member.value for member in cls)
        raise InvalidParameterError(f"unknown filter type {value!r}, expected one of: {names}")


# Documented camelCase option names accepted by from_dict
_ALIASES = {
    "filterType": "filter_type",
    "hannCutoffFrequency": "cutoff_frequency",
    "hann_cutoff_frequency": "cutoff_frequency",
    "cutoffFrequency": "cutoff_frequency",
    "shortScanWeighting": "short_scan",
    "short_scan_weighting": "short_scan",
    "projectionChunk": "projection_chunk",
    "numThreads": "num_threads",
}


@dataclass(frozen=True)
class ReconstructionConfig:
    """Options shared by the FDK and the variance pipelines.

    Parameters
    ----------
    filter_type : FilterType or str, optional
        Apodization window of the ramp filter (default: Ram-Lak).
    cutoff_frequency : float, optional
        Window cutoff as a fraction of the Nyquist frequency, in [0, 1]
        (default: 1.0). Frequencies above the cutoff are removed.
    short_scan : bool, optional
        Enable Parker short-scan weighting (default: False). It is a no-op for
        full-scan acquisitions.
    projection_chunk : int, optional
        Number of projections weighted and filtered per batch.
    num_threads : int, optional
        Upper bound on backprojection worker threads (default: Numba's).

    Raises
    ------
    InvalidParameterError
        If any option is of the wrong type or out of range.

    Examples
    --------
    >>> config = ReconstructionConfig(filter_type="Hann", cutoff_frequency=0.8)
    >>> config.filter_type
    <FilterType.HANN: 'hann'>
    """

    filter_type: FilterType = FilterType.RAM_LAK
    cutoff_frequency: float = 1.0
    short_scan: bool = False
    projection_chunk: int = _DEFAULT_PROJECTION_CHUNK
    num_threads: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "filter_type", FilterType.parse(self.filter_type))

        cutoff = self.cutoff_frequency
        if isinstance(cutoff, bool) or not isinstance(cutoff, (int, float)):
            raise InvalidParameterError(f"cutoff_frequency must be a number, got {cutoff!r}")
        if not math.isfinite(cutoff) or not 0.0 <= cutoff <= 1.0:
            raise InvalidParameterError(f"cutoff_frequency must lie in [0, 1], got {cutoff!r}")
        object.__setattr__(self, "cutoff_frequency", float(cutoff))

        if not isinstance(self.short_scan, bool):
            raise InvalidParameterError(f"short_scan must be a bool, got {self.short_scan!r}")

        chunk = self.projection_chunk
        if isinstance(chunk, bool) or not isinstance(chunk, int) or chunk < 1:
            raise InvalidParameterError(f"projection_chunk must be a positive int, got {chunk!r}")

        threads = self.num_threads
        if threads is not None and (isinstance(threads, bool) or not isinstance(threads, int) or threads < 1):
            raise InvalidParameterError(f"num_threads must be a positive int or None, got {threads!r}")

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "ReconstructionConfig":
        """Build a configuration from a mapping of option names.

        Both the snake_case field names and the camelCase names
        ``filterType``, ``hannCutoffFrequency`` and ``shortScanWeighting``
        are recognised.

        Raises
        ------
        InvalidParameterError
            On unrecognised or duplicated option names and invalid values.
        """
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in options.items():
            name = _ALIASES.get(key, key)
            if name not in known:
                raise InvalidParameterError(f"unrecognised reconstruction option {key!r}")
            if name in kwargs:
                raise InvalidParameterError(f"option {name!r} given more than once")
            kwargs[name] = value
        config = cls(**kwargs)
        logger.debug("configuration: %s", config)
        return config
