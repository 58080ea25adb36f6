"""
Coordinate Transform Pipeline

Bridges the pano dataset frame (Y-up, mirrored X) and the BIM model frame
(Z-up). Positions go through the calibrated similarity transform with an
axis flip; orientations go through a fixed chain of quaternion operators.

    forward(p) = scale * R @ flip(p) + translation
    inverse(q) = flip(R^T @ ((q - translation) / scale))

inverse(forward(p)) == p within floating-point tolerance.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from rich.console import Console

from geomutils.matrix import (
    is_finite,
    normalize_quaternion,
    quaternion_inverse,
    quaternion_multiply,
    rotation_matrix_to_quaternion,
)

from .boundary import BoundaryGuard
from .calibration import CalibrationResult, solve_similarity
from .errors import NonFiniteValue, ValidationError
from .models import CalibrationSet, CorrespondencePair, Point3, Pose, Quaternion, SimilarityTransform

console = Console()

# Calibration quaternion fitted for the reference site (x, y, z, w)
DEFAULT_CALIBRATION_QUATERNION = (0.66681372, -0.09451034, -0.00199205, 0.73920450)
# +90 degree pitch about X
Q_PITCH_90 = (math.sqrt(0.5), 0.0, 0.0, math.sqrt(0.5))
# 180 degree rotation about the model's vertical (Z) axis; mirrors left/right viewing
Q_YAW_180 = (0.0, 0.0, 1.0, 0.0)


def _checked_point(values: np.ndarray, what: str) -> Point3:
    if not is_finite(values):
        raise NonFiniteValue(f"{what} produced a non-finite position: {np.asarray(values).tolist()}")
    return Point3.from_array(values)


def _checked_quaternion(q: np.ndarray, what: str) -> Quaternion:
    if not is_finite(q):
        raise NonFiniteValue(f"{what} produced a non-finite orientation: {np.asarray(q).tolist()}")
    return Quaternion.from_array(q)


class OrientationPipeline:
    """
    Pano -> model orientation: calibration quaternion, then +90 pitch,
    then 180 about the vertical axis. The inverse undoes the operators in
    reversed order with their inverses. Every composition is renormalized.
    """

    def __init__(self, calibration_quaternion: Sequence[float] = DEFAULT_CALIBRATION_QUATERNION):
        if not is_finite(calibration_quaternion) or len(calibration_quaternion) != 4:
            raise ValidationError(f"Invalid calibration quaternion: {list(calibration_quaternion)}")
        try:
            q_cal = normalize_quaternion(calibration_quaternion)
        except ValueError as e:
            raise ValidationError(str(e))
        self.operators = [
            q_cal,
            np.array(Q_PITCH_90),
            np.array(Q_YAW_180),
        ]

    @staticmethod
    def from_transform(transform: SimilarityTransform) -> "OrientationPipeline":
        """Derive the calibration quaternion from a solved rotation."""
        return OrientationPipeline(rotation_matrix_to_quaternion(transform.rotation))

    @property
    def calibration_quaternion(self) -> np.ndarray:
        return self.operators[0].copy()

    def forward(self, q: np.ndarray) -> np.ndarray:
        result = normalize_quaternion(q)
        for op in self.operators:
            result = normalize_quaternion(quaternion_multiply(op, result))
        return result

    def inverse(self, q: np.ndarray) -> np.ndarray:
        result = normalize_quaternion(q)
        for op in reversed(self.operators):
            result = normalize_quaternion(quaternion_multiply(quaternion_inverse(op), result))
        return result


class CoordinateTransformPipeline:
    """Position and orientation mapping between the pano and model frames."""

    def __init__(
        self,
        transform: Optional[SimilarityTransform] = None,
        orientation: Optional[OrientationPipeline] = None,
        flip_axis: Optional[int] = 0,
        calibration: Optional[CalibrationResult] = None,
    ):
        if flip_axis is not None and flip_axis not in (0, 1, 2):
            raise ValidationError(f"flip_axis must be 0, 1, 2 or None, got {flip_axis}")
        self.transform = transform or SimilarityTransform.identity()
        self.orientation = orientation or OrientationPipeline()
        self.flip_axis = flip_axis
        self.calibration = calibration

    @staticmethod
    def from_calibration(
        calibration_set: CalibrationSet,
        flip_axis: Optional[int] = 0,
        orientation: Optional[OrientationPipeline] = None,
        derive_orientation: bool = False,
    ) -> "CoordinateTransformPipeline":
        """
        Fit the position transform from correspondences.

        Source points are flipped before solving so the stored transform is
        expressed in the same frame ``forward_position`` applies it in.

        Args:
            calibration_set: Pano (source) -> model (target) pairs
            flip_axis: Axis negated on entry to reconcile handedness
            orientation: Orientation pipeline to use (default site constant)
            derive_orientation: Use the solved rotation as calibration quaternion

        Returns:
            Pipeline with ``calibration`` holding the solver result
        """
        flipped = CalibrationSet(tuple(
            CorrespondencePair(
                Point3.from_array(_flip(pair.source_point.as_array(), flip_axis)),
                pair.target_point,
            )
            for pair in calibration_set.pairs
        ))
        result = solve_similarity(flipped)
        if derive_orientation:
            orientation = OrientationPipeline.from_transform(result.transform)
        return CoordinateTransformPipeline(
            transform=result.transform,
            orientation=orientation,
            flip_axis=flip_axis,
            calibration=result,
        )

    def flip(self, values: np.ndarray) -> np.ndarray:
        return _flip(values, self.flip_axis)

    # Positions

    def forward_position(self, point: Point3) -> Point3:
        """Pano dataset point -> model point."""
        mapped = self.transform.apply(self.flip(point.as_array()))
        return _checked_point(mapped, "forward_position")

    def inverse_position(self, point: Point3) -> Point3:
        """Model point -> pano dataset point."""
        mapped = self.flip(self.transform.apply_inverse(point.as_array()))
        return _checked_point(mapped, "inverse_position")

    # Orientations

    def forward_orientation(self, q: Quaternion) -> Quaternion:
        return _checked_quaternion(self.orientation.forward(q.as_array()), "forward_orientation")

    def inverse_orientation(self, q: Quaternion) -> Quaternion:
        return _checked_quaternion(self.orientation.inverse(q.as_array()), "inverse_orientation")

    # Poses

    def forward_pose(self, pose: Pose) -> Pose:
        return Pose(self.forward_position(pose.position), self.forward_orientation(pose.orientation))

    def inverse_pose(self, pose: Pose) -> Pose:
        return Pose(self.inverse_position(pose.position), self.inverse_orientation(pose.orientation))

    def to_dict(self) -> dict:
        return {
            "transform": self.transform.to_dict(),
            "calibration_quaternion": self.orientation.calibration_quaternion.tolist(),
            "flip_axis": self.flip_axis,
        }

    @staticmethod
    def from_dict(d: dict) -> "CoordinateTransformPipeline":
        try:
            return CoordinateTransformPipeline(
                transform=SimilarityTransform.from_dict(d["transform"]),
                orientation=OrientationPipeline(d.get("calibration_quaternion", DEFAULT_CALIBRATION_QUATERNION)),
                flip_axis=d.get("flip_axis", 0),
            )
        except KeyError as e:
            raise ValidationError(f"Missing transform field: {e}")


def _flip(values: np.ndarray, axis: Optional[int]) -> np.ndarray:
    result = np.array(values, dtype=float)
    if axis is not None:
        result[axis] = -result[axis]
    return result


# Offset terms, in coefficient order: px, py, pz, px*py, py^2, py*pz, 1
QUADRATIC_TERMS = 7


def _quadratic_features(offset: Sequence[float]) -> np.ndarray:
    px, py, pz = (float(v) for v in offset)
    return np.array([px, py, pz, px * py, py * py, py * pz, 1.0])


@dataclass(frozen=True)
class QuadraticCorrection:
    """
    Best-effort local refinement added after ``forward_position``.

    Each of the model x/y offsets is a quadratic regression over the pano
    camera offset (pan, tilt, zoom). The correction is NOT invertible and
    is outside the round-trip contract of the primary pipeline. The default
    coefficients were fitted on one site and should not be assumed to
    generalize; refit with ``fit`` for a new site.
    """
    x_coefficients: Tuple[float, ...] = (7.4506, -20.2788, 2.0486, 0.0342, 0.0935, 0.0213, 0.2149)
    y_coefficients: Tuple[float, ...] = (0.9336, -16.9745, 3.4552, 0.0756, 0.3271, 0.0387, -0.8702)

    def __post_init__(self):
        for name in ("x_coefficients", "y_coefficients"):
            coeffs = tuple(float(c) for c in getattr(self, name))
            if len(coeffs) != QUADRATIC_TERMS:
                raise ValidationError(f"{name} needs {QUADRATIC_TERMS} terms, got {len(coeffs)}")
            if not is_finite(coeffs):
                raise NonFiniteValue(f"{name} contains non-finite values")
            object.__setattr__(self, name, coeffs)

    @staticmethod
    def default() -> "QuadraticCorrection":
        """Coefficients fitted for the reference site."""
        return QuadraticCorrection()

    def offset(self, pano_offset: Sequence[float]) -> Tuple[float, float]:
        if len(pano_offset) != 3 or not is_finite(pano_offset):
            raise ValidationError(f"Pano offset must be 3 finite values, got {list(pano_offset)}")
        features = _quadratic_features(pano_offset)
        return (
            float(features @ np.array(self.x_coefficients)),
            float(features @ np.array(self.y_coefficients)),
        )

    def apply(self, position: Point3, pano_offset: Sequence[float], height: Optional[float] = None) -> Point3:
        """Add the fitted offset to a model-frame position (x/y only)."""
        dx, dy = self.offset(pano_offset)
        z = position.z if height is None else height
        return _checked_point(np.array([position.x + dx, position.y + dy, z]), "QuadraticCorrection")

    @staticmethod
    def fit(pano_offsets: Sequence[Sequence[float]], observed_offsets: Sequence[Sequence[float]]) -> "QuadraticCorrection":
        """
        Least-squares fit of both offset axes.

        Args:
            pano_offsets: (N, 3) pano camera offsets
            observed_offsets: (N, 2) measured model x/y offsets

        Returns:
            Fitted correction
        """
        if len(pano_offsets) != len(observed_offsets):
            raise ValidationError("Offset sample counts differ")
        if len(pano_offsets) < QUADRATIC_TERMS:
            raise ValidationError(
                f"Need at least {QUADRATIC_TERMS} samples to fit the correction, got {len(pano_offsets)}"
            )
        A = np.array([_quadratic_features(o) for o in pano_offsets])
        b = np.asarray(observed_offsets, dtype=float)
        if b.shape != (len(pano_offsets), 2) or not is_finite(A) or not is_finite(b):
            raise ValidationError("Observed offsets must be finite (N, 2) values")
        coeffs, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
        if rank < QUADRATIC_TERMS:
            console.print(f"[yellow]Warning: correction fit is rank deficient (rank {rank})[/yellow]")
        return QuadraticCorrection(tuple(coeffs[:, 0]), tuple(coeffs[:, 1]))


@dataclass
class DatasetCalibration:
    """Result of mapping a whole dataset into the model frame."""
    pipeline: CoordinateTransformPipeline
    model_points: List[Point3]
    outside_indices: List[int] = field(default_factory=list)


def calibrate_dataset(
    calibration_set: CalibrationSet,
    dataset_points: Sequence[Point3],
    boundary: Optional[BoundaryGuard] = None,
    flip_axis: Optional[int] = 0,
) -> DatasetCalibration:
    """
    Calibrate, then map every dataset point into the model frame.

    Points landing outside the site boundary are reported, not moved.
    """
    pipeline = CoordinateTransformPipeline.from_calibration(calibration_set, flip_axis=flip_axis)
    model_points = [pipeline.forward_position(p) for p in dataset_points]

    outside = []
    if boundary is not None:
        outside = [i for i, p in enumerate(model_points) if not boundary.is_inside(p.x, p.y)]
        if outside:
            console.print(
                f"[yellow]Warning: {len(outside)} of {len(model_points)} points outside model boundary[/yellow]"
            )

    return DatasetCalibration(pipeline=pipeline, model_points=model_points, outside_indices=outside)
