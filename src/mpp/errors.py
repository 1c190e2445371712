"""
Exception taxonomy for the marked point process optimizer.

Structural requests and index operations raise typed errors that callers can
handle. Invariant violations indicate a defect rather than a data condition
and always propagate out of the optimization loop.
"""


class MppError(Exception):
    """Base exception for optimizer errors."""
    pass


class InvalidMarkReferenceError(MppError):
    """Add of a duplicate identity, or remove/exchange of a missing one."""
    pass


class SpatialIndexError(MppError):
    """Base exception for spatial index errors."""
    pass


class DuplicateIdentityError(SpatialIndexError):
    """An identity is already present in the index."""
    pass


class EntryNotFoundError(SpatialIndexError):
    """No entry matches the requested identity and box."""
    pass


class EnergyEvaluationError(MppError):
    """Energy could not be evaluated for a single candidate.

    The optimization loop rejects the candidate and continues.
    """
    pass


class InvariantViolationError(MppError):
    """Internal state is inconsistent. Fatal for the run."""
    pass


class IndexDesyncError(InvariantViolationError):
    """Spatial index and configuration disagree about the live marks."""
    pass


class CacheCorruptionError(InvariantViolationError):
    """Energy cache bookkeeping is inconsistent."""
    pass
