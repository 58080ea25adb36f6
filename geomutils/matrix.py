"""Matrix and quaternion utilities for coordinate frame conversion.

Quaternions are stored as numpy arrays in ``[x, y, z, w]`` order, the same
order both viewers report them in.
"""

import numpy as np
from typing import List, Sequence


def matrix_from_rows(data: Sequence[float], size: int = 3) -> np.ndarray:
    """Convert a row-major flat list to a square matrix."""
    if len(data) != size * size:
        raise ValueError(f"Expected {size * size} elements, got {len(data)}")
    return np.array(data, dtype=float).reshape(size, size)


def matrix_to_rows(matrix: np.ndarray) -> List[float]:
    """Convert a square matrix to a row-major flat list."""
    return matrix.flatten().tolist()


def is_finite(values) -> bool:
    """True when every element is a finite float."""
    return bool(np.all(np.isfinite(np.asarray(values, dtype=float))))


def is_proper_rotation(rotation: np.ndarray, atol: float = 1e-4) -> bool:
    """
    Validate that a 3x3 matrix is a proper rotation.

    Checks:
    - Shape is (3, 3)
    - No NaN or Inf values
    - Orthonormal (R^T R = I within tolerance)
    - Determinant is +1 (not -1, which would indicate reflection)
    """
    rotation = np.asarray(rotation, dtype=float)
    if rotation.shape != (3, 3):
        return False

    if not is_finite(rotation):
        return False

    if not np.allclose(rotation.T @ rotation, np.eye(3), atol=atol):
        return False

    det = np.linalg.det(rotation)
    if not np.isclose(det, 1.0, atol=atol):
        return False

    return True


def similarity_matrix(rotation: np.ndarray, scale: float, translation: np.ndarray) -> np.ndarray:
    """Compose a 4x4 similarity matrix [sR t; 0 1]."""
    result = np.eye(4)
    result[:3, :3] = scale * np.asarray(rotation, dtype=float)
    result[:3, 3] = np.asarray(translation, dtype=float)
    return result


def rotation_matrix_to_quaternion(R: np.ndarray) -> np.ndarray:
    """Convert 3x3 rotation matrix to quaternion [x, y, z, w]."""
    trace = np.trace(R)

    if trace > 0:
        s = 0.5 / np.sqrt(trace + 1.0)
        w = 0.25 / s
        x = (R[2, 1] - R[1, 2]) * s
        y = (R[0, 2] - R[2, 0]) * s
        z = (R[1, 0] - R[0, 1]) * s
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        w = (R[2, 1] - R[1, 2]) / s
        x = 0.25 * s
        y = (R[0, 1] + R[1, 0]) / s
        z = (R[0, 2] + R[2, 0]) / s
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        w = (R[0, 2] - R[2, 0]) / s
        x = (R[0, 1] + R[1, 0]) / s
        y = 0.25 * s
        z = (R[1, 2] + R[2, 1]) / s
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        w = (R[1, 0] - R[0, 1]) / s
        x = (R[0, 2] + R[2, 0]) / s
        y = (R[1, 2] + R[2, 1]) / s
        z = 0.25 * s

    return normalize_quaternion(np.array([x, y, z, w]))


def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    """Convert quaternion [x, y, z, w] to 3x3 rotation matrix."""
    x, y, z, w = normalize_quaternion(q)

    R = np.array([
        [1 - 2*(y*y + z*z), 2*(x*y - w*z), 2*(x*z + w*y)],
        [2*(x*y + w*z), 1 - 2*(x*x + z*z), 2*(y*z - w*x)],
        [2*(x*z - w*y), 2*(y*z + w*x), 1 - 2*(x*x + y*y)]
    ])

    return R


def normalize_quaternion(q: np.ndarray) -> np.ndarray:
    """Scale a quaternion to unit length."""
    q = np.asarray(q, dtype=float)
    norm = np.linalg.norm(q)
    if not np.isfinite(norm) or norm < 1e-12:
        raise ValueError(f"Cannot normalize quaternion {q.tolist()}")
    return q / norm


def quaternion_multiply(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """Hamilton product q1 * q2 (apply q2 first, then q1)."""
    x1, y1, z1, w1 = q1
    x2, y2, z2, w2 = q2
    return np.array([
        w1*x2 + x1*w2 + y1*z2 - z1*y2,
        w1*y2 - x1*z2 + y1*w2 + z1*x2,
        w1*z2 + x1*y2 - y1*x2 + z1*w2,
        w1*w2 - x1*x2 - y1*y2 - z1*z2,
    ])


def quaternion_conjugate(q: np.ndarray) -> np.ndarray:
    x, y, z, w = q
    return np.array([-x, -y, -z, w])


def quaternion_inverse(q: np.ndarray) -> np.ndarray:
    """Inverse of a (not necessarily unit) quaternion."""
    q = np.asarray(q, dtype=float)
    len2 = float(np.dot(q, q))
    if len2 < 1e-24:
        raise ValueError("Cannot invert zero quaternion")
    return quaternion_conjugate(q) / len2


def quaternion_from_axis_angle(axis: Sequence[float], angle: float) -> np.ndarray:
    """Quaternion rotating by ``angle`` radians about ``axis``."""
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    half = 0.5 * angle
    return np.array([*(axis * np.sin(half)), np.cos(half)])


def quaternion_angle(q1: np.ndarray, q2: np.ndarray) -> float:
    """Rotation angle (radians) between two orientations, sign-agnostic."""
    q1 = normalize_quaternion(q1)
    q2 = normalize_quaternion(q2)
    dot = min(1.0, abs(float(np.dot(q1, q2))))
    return 2.0 * float(np.arccos(dot))


def slerp(q1: np.ndarray, q2: np.ndarray, t: float) -> np.ndarray:
    """Spherical linear interpolation between two quaternions."""
    # Normalize
    q1 = normalize_quaternion(q1)
    q2 = normalize_quaternion(q2)

    dot = np.dot(q1, q2)

    # If negative dot, negate one quaternion to take shorter path
    if dot < 0:
        q2 = -q2
        dot = -dot

    # If nearly parallel, use linear interpolation
    if dot > 0.9995:
        result = q1 + t * (q2 - q1)
        return result / np.linalg.norm(result)

    theta_0 = np.arccos(dot)
    theta = theta_0 * t

    q_perp = q2 - q1 * dot
    q_perp = q_perp / np.linalg.norm(q_perp)

    return q1 * np.cos(theta) + q_perp * np.sin(theta)


def lerp(p1: np.ndarray, p2: np.ndarray, t: float) -> np.ndarray:
    """Linear interpolation between two points."""
    return np.asarray(p1, dtype=float) * (1 - t) + np.asarray(p2, dtype=float) * t


def yaw_to_quaternion(yaw: float, pitch: float = 0.0) -> np.ndarray:
    """
    Build a Y-up camera orientation from yaw (about +Y) and pitch (about +X).

    Yaw is applied after pitch, matching the "YXZ" Euler order used by the
    panorama camera.
    """
    q_yaw = quaternion_from_axis_angle([0.0, 1.0, 0.0], yaw)
    q_pitch = quaternion_from_axis_angle([1.0, 0.0, 0.0], pitch)
    return normalize_quaternion(quaternion_multiply(q_yaw, q_pitch))
