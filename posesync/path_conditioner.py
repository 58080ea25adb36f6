"""
Path Conditioning

Denoises the raw pano waypoint sequence before it is rendered and used for
nearest-point lookups.

Stages:
1. Savitzky-Golay smoothing (per axis, fixed convolution kernel)
2. Constant-velocity Kalman filtering (per axis)
3. Minimum-separation repair
4. Optional axis-snapped ("Manhattan") reconstruction

The output always has one sample per input sample, so image references
stay attached to the frame they were captured with.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from rich.console import Console

from geomutils.matrix import is_finite

from .config import EngineConfig
from .errors import NonFiniteValue, ValidationError
from .models import PathPoint, Point3

console = Console()

# Repaired pairs are placed this fraction beyond the threshold so rounding
# never leaves them a hair short of it.
SEPARATION_SLACK = 1e-9
COINCIDENT_EPS = 1e-9
MIN_STEP = 1e-4  # horizontal step below which a Manhattan sample repeats the previous one


@dataclass
class ConditionedPath:
    """Conditioned samples plus any non-fatal warnings raised along the way."""
    points: List[PathPoint]
    warnings: List[str] = field(default_factory=list)
    stats: Dict = field(default_factory=dict)

    def positions(self) -> np.ndarray:
        return np.array([p.position.as_list() for p in self.points]).reshape(-1, 3)


def _as_positions(points) -> np.ndarray:
    if len(points) and isinstance(points[0], Point3):
        arr = np.array([p.as_list() for p in points], dtype=float)
    else:
        arr = np.asarray(points, dtype=float)
    arr = arr.reshape(-1, 3) if arr.size else np.zeros((0, 3))
    if not is_finite(arr):
        raise NonFiniteValue("Path contains non-finite coordinates")
    return arr


def savitzky_golay(positions: np.ndarray, window: int = 11, order: int = 3) -> Tuple[np.ndarray, Optional[str]]:
    """
    Smooth each axis with a Savitzky-Golay kernel.

    The kernel is the centre row of A (A^T A)^-1 A^T for the polynomial
    design matrix A over offsets -half..half. Samples past either end are
    clamped to the first/last sample.

    Returns:
        Tuple of (smoothed_positions, warning). On a singular design matrix
        the input is returned unchanged with a warning.
    """
    positions = np.asarray(positions, dtype=float)
    n = len(positions)
    if n == 0:
        return positions.copy(), None

    half = window // 2
    offsets = np.arange(-half, half + 1)
    A = np.vander(offsets.astype(float), order + 1, increasing=True)
    ATA = A.T @ A

    if np.linalg.matrix_rank(ATA) < order + 1:
        warning = (f"Savitzky-Golay design matrix is singular (window={window}, order={order}); "
                   "returning unsmoothed path")
        console.print(f"[yellow]Warning: {warning}[/yellow]")
        return positions.copy(), warning

    try:
        coeffs = (A @ np.linalg.inv(ATA) @ A.T)[half]
    except np.linalg.LinAlgError as e:
        warning = f"Savitzky-Golay kernel failed ({e}); returning unsmoothed path"
        console.print(f"[yellow]Warning: {warning}[/yellow]")
        return positions.copy(), warning

    idx = np.clip(np.arange(n)[:, None] + offsets[None, :], 0, n - 1)
    smoothed = np.einsum('k,nkd->nd', coeffs, positions[idx])
    return smoothed, None


def kalman_filter(positions: np.ndarray, process_noise: float = 1e-3, measurement_noise: float = 1e-2) -> np.ndarray:
    """
    Per-axis constant-velocity Kalman filter, run sequentially.

    State per axis is [position, velocity] with unit time step; only
    position is measured. The first sample initializes the state.
    """
    positions = np.asarray(positions, dtype=float)
    n = len(positions)
    if n == 0:
        return positions.copy()

    F = np.array([[1.0, 1.0], [0.0, 1.0]])
    Q = process_noise * np.array([[1.0 / 3.0, 0.5], [0.5, 1.0]])

    # One independent filter per axis: state (3, 2), covariance (3, 2, 2)
    x = np.zeros((3, 2))
    x[:, 0] = positions[0]
    P = np.tile(np.eye(2), (3, 1, 1))

    filtered = np.empty_like(positions)
    filtered[0] = positions[0]

    for i in range(1, n):
        # Predict
        x = x @ F.T
        P = F @ P @ F.T + Q

        # Update
        S = P[:, 0, 0] + measurement_noise
        K = P[:, :, 0] / S[:, None]
        innovation = positions[i] - x[:, 0]
        x = x + K * innovation[:, None]
        P = P - K[:, :, None] * P[:, 0, :][:, None, :]

        filtered[i] = x[:, 0]

    return filtered


def _random_direction(rng: np.random.Generator) -> np.ndarray:
    while True:
        v = rng.random(3) - 0.5
        norm = np.linalg.norm(v)
        if norm > 1e-6:
            return v / norm


def enforce_min_separation(
    positions: np.ndarray,
    min_separation: float = 0.05,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[np.ndarray, int]:
    """
    Push apart consecutive samples closer than ``min_separation``.

    A too-close pair is replaced by two points straddling its midpoint along
    the local direction (a random direction when the points coincide). If
    moving the earlier point would break its own gap to the sample before
    it, only the later point is moved instead.

    Returns:
        Tuple of (repaired_positions, number_of_repairs)
    """
    positions = np.asarray(positions, dtype=float)
    if len(positions) < 2:
        return positions.copy(), 0

    rng = rng if rng is not None else np.random.default_rng(0)
    gap = min_separation * (1.0 + SEPARATION_SLACK)
    half = 0.5 * gap

    fixed = [positions[0].copy()]
    repairs = 0

    for curr in positions[1:]:
        prev = fixed[-1]
        d = float(np.linalg.norm(curr - prev))
        if d >= min_separation:
            fixed.append(curr.copy())
            continue

        repairs += 1
        direction = (curr - prev) / d if d > COINCIDENT_EPS else _random_direction(rng)
        mid = 0.5 * (prev + curr)
        moved_prev = mid - direction * half
        moved_curr = mid + direction * half

        if len(fixed) >= 2 and np.linalg.norm(moved_prev - fixed[-2]) < min_separation:
            fixed.append(prev + direction * gap)
        else:
            fixed[-1] = moved_prev
            fixed.append(moved_curr)

    return np.array(fixed), repairs


def _norm180(angle_deg: float) -> float:
    a = angle_deg % 360.0
    if a > 180.0:
        a -= 360.0
    return a


def manhattan_path(
    positions: np.ndarray,
    lookahead: int = 5,
    hysteresis: int = 2,
    height: Optional[float] = None,
) -> np.ndarray:
    """
    Rebuild the path with headings snapped to 0/90/180/270 degrees.

    Works in the pano ground plane (x/z, y up). The heading for each step
    comes from the sum of up to ``lookahead`` future deltas, snapped to the
    nearest axis; a new heading must persist for ``hysteresis`` samples
    before it replaces the current one. Each output step keeps the length
    of the raw step. Height is held constant (mean height by default).
    """
    positions = np.asarray(positions, dtype=float)
    n = len(positions)
    if n < 2:
        return positions.copy()

    constant_y = float(height) if height is not None else float(positions[:, 1].mean())

    def future_trend(start: int) -> Tuple[float, float]:
        end = min(n - 1, start + lookahead)
        deltas = positions[start + 1:end + 1] - positions[start:end]
        return float(deltas[:, 0].sum()), float(deltas[:, 2].sum())

    out = np.empty_like(positions)
    out[0] = [positions[0, 0], constant_y, positions[0, 2]]
    prev_out = out[0].copy()
    prev_raw = positions[0]

    current_snap: Optional[float] = None
    pending_switch = 0

    for i in range(1, n):
        raw = positions[i]
        dx = raw[0] - prev_raw[0]
        dz = raw[2] - prev_raw[2]
        length = math.hypot(dx, dz)
        if length < MIN_STEP:
            out[i] = prev_out
            prev_raw = raw
            continue

        # 1) Heading from the future trend, falling back to the local step
        vx, vz = future_trend(i - 1)
        if math.hypot(vx, vz) < 1e-6:
            vx, vz = dx, dz
        trend_deg = math.degrees(math.atan2(vz, vx))
        snapped = _norm180(math.floor(trend_deg / 90.0 + 0.5) * 90.0)

        # 2) Hysteresis
        if current_snap is None:
            current_snap = snapped
        if snapped != current_snap:
            pending_switch += 1
            if pending_switch >= hysteresis:
                current_snap = snapped
                pending_switch = 0
        else:
            pending_switch = 0

        # 3) Axis-aligned direction, never stepping backwards against the raw step
        dir_x = math.cos(math.radians(current_snap))
        dir_z = math.sin(math.radians(current_snap))
        if dx * dir_x + dz * dir_z < 0:
            dir_x, dir_z = -dir_x, -dir_z

        # 4) Advance by the raw step length
        new_point = np.array([prev_out[0] + dir_x * length, constant_y, prev_out[2] + dir_z * length])
        out[i] = new_point
        prev_out = new_point
        prev_raw = raw

    return out


def compute_yaws(positions: np.ndarray) -> List[float]:
    """Heading (radians, atan2(dz, dx)) toward the next sample; the last sample keeps the previous heading."""
    n = len(positions)
    yaws = [0.0] * n
    for i in range(n - 1):
        dx = positions[i + 1, 0] - positions[i, 0]
        dz = positions[i + 1, 2] - positions[i, 2]
        yaws[i] = math.atan2(dz, dx)
    if n >= 2:
        yaws[-1] = yaws[-2]
    return yaws


def path_stats(positions: np.ndarray) -> Dict:
    positions = np.asarray(positions, dtype=float).reshape(-1, 3)
    stats = {"point_count": len(positions), "total_length": 0.0, "min_separation": None}
    if len(positions) >= 2:
        steps = np.linalg.norm(np.diff(positions, axis=0), axis=1)
        stats["total_length"] = float(steps.sum())
        stats["min_separation"] = float(steps.min())
    return stats


def nearest_path_index(points: Sequence[PathPoint], query: Point3) -> int:
    """3D Euclidean nearest neighbour by linear scan."""
    if not points:
        raise ValidationError("Path is empty")
    positions = np.array([p.position.as_list() for p in points])
    distances = np.linalg.norm(positions - query.as_array(), axis=1)
    return int(np.argmin(distances))


class PathConditioner:
    """Runs the conditioning stages with one configuration."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def condition(self, raw_points, image_refs: Optional[Sequence[Optional[str]]] = None) -> ConditionedPath:
        """
        Condition raw waypoints.

        Args:
            raw_points: Sequence of Point3 or an (N, 3) array
            image_refs: Optional image reference per raw point

        Returns:
            ConditionedPath with exactly one PathPoint per raw point
        """
        cfg = self.config
        positions = _as_positions(raw_points)
        n = len(positions)
        if image_refs is not None and len(image_refs) != n:
            raise ValidationError(f"Got {len(image_refs)} image refs for {n} points")
        refs = list(image_refs) if image_refs is not None else [None] * n

        warnings: List[str] = []
        if n == 0:
            return ConditionedPath(points=[], warnings=warnings, stats=path_stats(positions))

        smoothed, warning = savitzky_golay(positions, cfg.smoothing_window, cfg.smoothing_order)
        if warning:
            warnings.append(warning)

        filtered = kalman_filter(smoothed, cfg.process_noise, cfg.measurement_noise)

        rng = np.random.default_rng(cfg.repair_seed)
        repaired, repairs = enforce_min_separation(filtered, cfg.min_separation, rng)

        if cfg.manhattan:
            snapped = manhattan_path(
                repaired,
                lookahead=cfg.manhattan_lookahead,
                hysteresis=cfg.manhattan_hysteresis,
                height=cfg.manhattan_height,
            )
            # Snapping flattens height and can shorten steps; re-establish the gap
            repaired, extra = enforce_min_separation(snapped, cfg.min_separation, rng)
            repairs += extra

        if not is_finite(repaired):
            raise NonFiniteValue("Path conditioning produced non-finite coordinates")

        yaws = compute_yaws(repaired)
        points = [
            PathPoint(position=Point3.from_array(repaired[i]), image_ref=refs[i], yaw=yaws[i], pitch=0.0)
            for i in range(n)
        ]

        stats = path_stats(repaired)
        stats["repairs"] = repairs
        if cfg.verbose:
            console.print(f"[blue]Conditioned {n} points ({repairs} separation repairs)[/blue]")

        return ConditionedPath(points=points, warnings=warnings, stats=stats)
