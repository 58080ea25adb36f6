"""
Calibration Solver

Fits the similarity transform (rotation, uniform scale, translation) that
maps pano-dataset points onto BIM-model points from user-entered
correspondences, using Umeyama's SVD least-squares method with reflection
correction.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from rich.console import Console

from geomutils.matrix import is_finite

from .errors import DegenerateConfiguration, InsufficientPoints, NonFiniteValue, NumericDegeneracy
from .models import MIN_CORRESPONDENCES, CalibrationSet, Point3, SimilarityTransform

console = Console()

# Second singular value relative to the first below which the points are
# treated as collinear.
COLLINEAR_TOLERANCE = 1e-9
MIN_SPREAD = 1e-12


@dataclass(frozen=True)
class CalibrationResult:
    """Solved transform with per-pair and aggregate residuals (meters)."""
    transform: SimilarityTransform
    residuals: Tuple[float, ...]
    max_error: float
    mean_error: float
    singular_values: Tuple[float, ...] = ()
    reflection_corrected: bool = False

    def to_dict(self) -> dict:
        return {
            **self.transform.to_dict(),
            "residuals": list(self.residuals),
            "max_error": self.max_error,
            "mean_error": self.mean_error,
        }


def solve_similarity(calibration_set: CalibrationSet) -> CalibrationResult:
    """
    Solve for the similarity transform mapping source points onto target points.

    Steps:
    1. Centroids of both clouds
    2. Cross-covariance H = sum (target_i - ct)(source_i - cs)^T
    3. SVD H = U diag(S) V^T
    4. R = U D V^T, D = diag(1, 1, -1) when det(U) det(V) < 0
    5. scale = trace(D diag(S)) / sum ||source_i - cs||^2
    6. translation = ct - scale * R @ cs
    7. Per-pair residuals

    Args:
        calibration_set: At least three correspondence pairs

    Returns:
        CalibrationResult

    Raises:
        InsufficientPoints: fewer than three pairs
        DegenerateConfiguration: collinear or coincident points
    """
    n = len(calibration_set)
    if n < MIN_CORRESPONDENCES:
        raise InsufficientPoints(f"Need at least {MIN_CORRESPONDENCES} matching points, got {n}")

    source = calibration_set.source_array()
    target = calibration_set.target_array()
    if not is_finite(source) or not is_finite(target):
        raise NonFiniteValue("Calibration points must be finite")

    # 1. Centroids
    source_centroid = source.mean(axis=0)
    target_centroid = target.mean(axis=0)

    # 2. Cross-covariance
    source_centered = source - source_centroid
    target_centered = target - target_centroid
    H = target_centered.T @ source_centered

    source_spread = float(np.sum(source_centered ** 2))
    if source_spread < MIN_SPREAD:
        raise DegenerateConfiguration("Source points are coincident (zero spread)")

    # 3. SVD
    U, S, Vt = np.linalg.svd(H)

    # Three points always span a plane, so the smallest singular value is
    # legitimately zero; collinearity shows up in the second one.
    if S[0] < MIN_SPREAD or S[1] <= COLLINEAR_TOLERANCE * S[0]:
        raise DegenerateConfiguration(
            f"Correspondence points are collinear (singular values {S.tolist()})"
        )

    # 4. Reflection correction
    D = np.eye(3)
    reflection = np.linalg.det(U) * np.linalg.det(Vt) < 0
    if reflection:
        D[2, 2] = -1.0
    rotation = U @ D @ Vt

    # 5. Scale
    scale = float(np.trace(D @ np.diag(S)) / source_spread)
    if not np.isfinite(scale) or scale <= MIN_SPREAD:
        raise DegenerateConfiguration(f"Near-zero scale ({scale})")

    # 6. Translation
    translation = target_centroid - scale * (rotation @ source_centroid)

    transform = SimilarityTransform(rotation, scale, Point3.from_array(translation))

    # 7. Residuals
    transformed = scale * (source @ rotation.T) + translation
    residuals = np.linalg.norm(target - transformed, axis=1)

    return CalibrationResult(
        transform=transform,
        residuals=tuple(float(r) for r in residuals),
        max_error=float(residuals.max()),
        mean_error=float(residuals.mean()),
        singular_values=tuple(float(s) for s in S),
        reflection_corrected=bool(reflection),
    )


def calibrate_or_identity(calibration_set: CalibrationSet) -> Tuple[CalibrationResult, List[str]]:
    """
    Solve, falling back to the identity transform on numeric degeneracy.

    Validation errors (too few points, non-finite input) still propagate.

    Returns:
        Tuple of (result, list_of_warnings)
    """
    try:
        return solve_similarity(calibration_set), []
    except NumericDegeneracy as e:
        warning = f"Calibration degenerate, using identity transform: {e}"
        console.print(f"[yellow]Warning: {warning}[/yellow]")

        identity = SimilarityTransform.identity()
        source = calibration_set.source_array()
        target = calibration_set.target_array()
        residuals = np.linalg.norm(target - source, axis=1)
        result = CalibrationResult(
            transform=identity,
            residuals=tuple(float(r) for r in residuals),
            max_error=float(residuals.max()),
            mean_error=float(residuals.mean()),
        )
        return result, [warning]


def print_calibration_report(result: CalibrationResult, calibration_set: Optional[CalibrationSet] = None):
    """Print a point-by-point verification table."""
    from rich.table import Table

    table = Table(title="Calibration residuals")
    table.add_column("#", justify="right")
    if calibration_set is not None:
        table.add_column("Source")
        table.add_column("Target")
    table.add_column("Error (m)", justify="right")

    for i, error in enumerate(result.residuals):
        row = [str(i)]
        if calibration_set is not None:
            pair = calibration_set.pairs[i]
            row.append(", ".join(f"{v:.4f}" for v in pair.source_point.as_list()))
            row.append(", ".join(f"{v:.4f}" for v in pair.target_point.as_list()))
        row.append(f"{error:.4f}")
        table.add_row(*row)

    console.print(table)
    console.print(f"[blue]Scale factor: {result.transform.scale:.8f}[/blue]")
    console.print(f"[blue]Translation: {[round(v, 6) for v in result.transform.translation.as_list()]}[/blue]")
    console.print(f"[green]Max error: {result.max_error:.4f} m, mean error: {result.mean_error:.4f} m[/green]")
