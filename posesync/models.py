"""
Value types shared by the calibration, transform, path and sync modules.

All types are immutable. Positions are in meters, quaternions are
``(x, y, z, w)`` and unit-norm.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from geomutils.matrix import (
    is_finite,
    is_proper_rotation,
    matrix_from_rows,
    matrix_to_rows,
    normalize_quaternion,
    similarity_matrix,
)

from .errors import InsufficientPoints, NonFiniteValue, ValidationError

MIN_CORRESPONDENCES = 3


@dataclass(frozen=True)
class Point3:
    x: float
    y: float
    z: float

    def __post_init__(self):
        for name in ("x", "y", "z"):
            value = getattr(self, name)
            if not isinstance(value, (int, float, np.floating, np.integer)):
                raise ValidationError(f"Point3.{name} must be a number, got {value!r}")
            if not math.isfinite(value):
                raise NonFiniteValue(f"Point3.{name} is not finite: {value}")
            object.__setattr__(self, name, float(value))

    @staticmethod
    def from_array(values: Sequence[float]) -> "Point3":
        if len(values) != 3:
            raise ValidationError(f"Expected 3 coordinates, got {len(values)}")
        try:
            x, y, z = (float(v) for v in values)
        except (TypeError, ValueError):
            raise ValidationError(f"Coordinates must be numbers, got {list(values)!r}")
        return Point3(x, y, z)

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z])

    def as_list(self) -> List[float]:
        return [self.x, self.y, self.z]

    def distance_to(self, other: "Point3") -> float:
        return math.dist(self.as_list(), other.as_list())


@dataclass(frozen=True)
class Quaternion:
    x: float
    y: float
    z: float
    w: float

    def __post_init__(self):
        values = (self.x, self.y, self.z, self.w)
        if not is_finite(values):
            raise NonFiniteValue(f"Quaternion has non-finite component: {values}")
        for name in ("x", "y", "z", "w"):
            object.__setattr__(self, name, float(getattr(self, name)))

    @staticmethod
    def identity() -> "Quaternion":
        return Quaternion(0.0, 0.0, 0.0, 1.0)

    @staticmethod
    def from_array(values: Sequence[float]) -> "Quaternion":
        """Build a unit quaternion from [x, y, z, w], normalizing it."""
        if len(values) != 4:
            raise ValidationError(f"Expected 4 quaternion components, got {len(values)}")
        if not is_finite(values):
            raise NonFiniteValue(f"Quaternion has non-finite component: {list(values)}")
        try:
            q = normalize_quaternion(values)
        except ValueError as e:
            raise NonFiniteValue(str(e))
        return Quaternion(*q.tolist())

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z, self.w])

    def as_list(self) -> List[float]:
        return [self.x, self.y, self.z, self.w]

    def normalized(self) -> "Quaternion":
        return Quaternion.from_array(self.as_list())


@dataclass(frozen=True)
class Pose:
    """One viewer's camera."""
    position: Point3
    orientation: Quaternion = field(default_factory=Quaternion.identity)

    @staticmethod
    def from_lists(position: Sequence[float], orientation: Sequence[float]) -> "Pose":
        return Pose(Point3.from_array(position), Quaternion.from_array(orientation))

    def to_dict(self) -> Dict:
        return {
            "position": self.position.as_list(),
            "orientation": self.orientation.as_list(),
        }


@dataclass(frozen=True)
class CorrespondencePair:
    """A user-entered calibration pair (source/pano point -> target/model point)."""
    source_point: Point3
    target_point: Point3

    def to_dict(self) -> Dict:
        return {
            "source": self.source_point.as_list(),
            "target": self.target_point.as_list(),
        }

    @staticmethod
    def from_dict(d: Dict) -> "CorrespondencePair":
        try:
            return CorrespondencePair(
                source_point=Point3.from_array(d["source"]),
                target_point=Point3.from_array(d["target"]),
            )
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed correspondence pair {d!r}: {e}")


@dataclass(frozen=True)
class CalibrationSet:
    """
    Ordered correspondence pairs.

    Order does not affect the solver but is preserved so the set round-trips
    through the calibration UI unchanged.
    """
    pairs: Tuple[CorrespondencePair, ...]

    def __post_init__(self):
        pairs = tuple(self.pairs)
        if len(pairs) < MIN_CORRESPONDENCES:
            raise InsufficientPoints(
                f"At least {MIN_CORRESPONDENCES} correspondence pairs required, got {len(pairs)}"
            )
        object.__setattr__(self, "pairs", pairs)

    def __len__(self) -> int:
        return len(self.pairs)

    @staticmethod
    def from_points(
        source_points: Sequence[Sequence[float]],
        target_points: Sequence[Sequence[float]],
    ) -> "CalibrationSet":
        if len(source_points) != len(target_points):
            raise ValidationError(
                f"Point count mismatch: {len(source_points)} source vs {len(target_points)} target"
            )
        return CalibrationSet(tuple(
            CorrespondencePair(Point3.from_array(s), Point3.from_array(t))
            for s, t in zip(source_points, target_points)
        ))

    def source_array(self) -> np.ndarray:
        return np.array([p.source_point.as_list() for p in self.pairs])

    def target_array(self) -> np.ndarray:
        return np.array([p.target_point.as_list() for p in self.pairs])

    def to_dict(self) -> Dict:
        return {"pairs": [p.to_dict() for p in self.pairs]}

    @staticmethod
    def from_dict(d: Dict) -> "CalibrationSet":
        pairs = d.get("pairs") if isinstance(d, dict) else d
        if not isinstance(pairs, list):
            raise ValidationError("Calibration data must contain a list of pairs")
        return CalibrationSet(tuple(CorrespondencePair.from_dict(p) for p in pairs))


@dataclass(frozen=True, eq=False)
class SimilarityTransform:
    """
    Rotation + uniform scale + translation: ``q = scale * R @ p + translation``.

    Created by the calibration solver and consumed read-only afterwards.
    Recalibration replaces the whole object.
    """
    rotation: np.ndarray
    scale: float
    translation: Point3

    def __post_init__(self):
        rotation = np.array(self.rotation, dtype=float)
        if not is_proper_rotation(rotation):
            raise ValidationError("Rotation must be proper-orthogonal (R^T R = I, det = +1)")
        if not math.isfinite(self.scale) or self.scale <= 0:
            raise ValidationError(f"Scale must be positive and finite, got {self.scale}")
        rotation.setflags(write=False)
        object.__setattr__(self, "rotation", rotation)
        object.__setattr__(self, "scale", float(self.scale))

    @staticmethod
    def identity() -> "SimilarityTransform":
        return SimilarityTransform(np.eye(3), 1.0, Point3(0.0, 0.0, 0.0))

    def matrix(self) -> np.ndarray:
        """Get 4x4 similarity matrix."""
        return similarity_matrix(self.rotation, self.scale, self.translation.as_array())

    def apply(self, point: np.ndarray) -> np.ndarray:
        return self.scale * (self.rotation @ np.asarray(point, dtype=float)) + self.translation.as_array()

    def apply_inverse(self, point: np.ndarray) -> np.ndarray:
        return self.rotation.T @ ((np.asarray(point, dtype=float) - self.translation.as_array()) / self.scale)

    def to_dict(self) -> Dict:
        return {
            "rotation": matrix_to_rows(self.rotation),
            "scale": self.scale,
            "translation": self.translation.as_list(),
        }

    @staticmethod
    def from_dict(d: Dict) -> "SimilarityTransform":
        try:
            # Row-major flat list; nested 3x3 lists are accepted too
            rotation = np.array(d["rotation"], dtype=float)
            if rotation.ndim == 1:
                rotation = matrix_from_rows(rotation.tolist())
            return SimilarityTransform(
                rotation=rotation,
                scale=float(d["scale"]),
                translation=Point3.from_array(d["translation"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed similarity transform: {e}")


@dataclass(frozen=True)
class PathPoint:
    """One conditioned path sample, ordered by acquisition sequence."""
    position: Point3
    image_ref: Optional[str] = None
    yaw: float = 0.0
    pitch: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "position": self.position.as_list(),
            "image_ref": self.image_ref,
            "yaw": self.yaw,
            "pitch": self.pitch,
        }
