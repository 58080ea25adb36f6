"""Error types shared by the sync engine."""


class PoseSyncError(Exception):
    """Base error for the sync engine."""
    pass


class ValidationError(PoseSyncError):
    """Malformed or insufficient input (correspondences, frames, config)."""
    pass


class InsufficientPoints(ValidationError):
    """Fewer correspondence pairs than the solver needs."""
    pass


class NonFiniteValue(ValidationError):
    """NaN or infinite value where a finite number is required."""
    pass


class NumericDegeneracy(PoseSyncError):
    """
    Numerically degenerate input.

    Callers that can continue with a safe default (identity transform,
    unsmoothed path) catch this and report a warning instead of aborting.
    """
    pass


class DegenerateConfiguration(NumericDegeneracy):
    """Calibration points are collinear, coincident or have no spread."""
    pass
