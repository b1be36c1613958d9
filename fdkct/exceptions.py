"""Exception hierarchy for fdkct.

Every error raised by the reconstruction core derives from
:class:`ReconstructionError`. Errors describing bad values also derive from
the matching builtin so that callers catching ``ValueError`` or
``MemoryError`` keep working.
"""


class ReconstructionError(Exception):
    """Base class for all errors raised by fdkct."""


class ConfigurationError(ReconstructionError):
    """Run configuration is missing or inconsistent.

    Raised before any computation, e.g. when the number of geometry records
    does not match the number of projections.
    """


class InvalidParameterError(ReconstructionError, ValueError):
    """A filter or reconstruction parameter is malformed or out of range."""


class InvalidGeometryError(ReconstructionError, ValueError):
    """A geometry record or grid description violates its invariants."""


class ResourceExhaustedError(ReconstructionError, MemoryError):
    """A projection, kernel or volume buffer could not be allocated."""


class ReconstructionStateError(ReconstructionError):
    """An orchestrator attempted an illegal state transition."""


class ReconstructionCancelled(ReconstructionError):
    """A run was cancelled between two orchestrator states."""
