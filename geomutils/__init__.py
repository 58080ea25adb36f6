"""Geometry and input-validation helpers for the pose sync engine."""

from .matrix import (
    is_finite,
    is_proper_rotation,
    normalize_quaternion,
    quaternion_multiply,
    slerp,
)
from .validation import (
    normalize_frame,
    validate_calibration_file,
    validate_dataset_file,
    validate_boundary_file,
    validate_path,
)

__all__ = [
    "is_finite",
    "is_proper_rotation",
    "normalize_quaternion",
    "quaternion_multiply",
    "slerp",
    "normalize_frame",
    "validate_calibration_file",
    "validate_dataset_file",
    "validate_boundary_file",
    "validate_path",
]
