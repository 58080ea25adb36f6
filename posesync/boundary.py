"""
Site Boundary Guard

Point-in-polygon test and nearest-edge clamp for the 2D site boundary
(model frame, floor plane x/y). The polygon is closed implicitly from the
last vertex back to the first.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from geomutils.matrix import is_finite

from .errors import NonFiniteValue, ValidationError

Vertex = Tuple[float, float]

# Clamped points are pulled back toward the interior until they test inside.
MAX_MARGIN_HALVINGS = 16
# Inward step used when the margin is zero
MIN_NUDGE = 1e-6


@dataclass(frozen=True)
class ClampResult:
    """Clamped position plus diagnostics. Not an error: outside points are corrected."""
    x: float
    y: float
    was_clamped: bool
    distance: float = 0.0  # distance from the query point to the boundary before clamping

    @property
    def point(self) -> Tuple[float, float]:
        return (self.x, self.y)


def validate_polygon(vertices: Sequence[Sequence[float]]) -> List[Vertex]:
    """Check a boundary definition and return it as a list of (x, y) tuples."""
    if len(vertices) < 3:
        raise ValidationError(f"Boundary needs at least 3 vertices, got {len(vertices)}")
    polygon = []
    for v in vertices:
        if len(v) != 2:
            raise ValidationError(f"Boundary vertex must have 2 coordinates, got {list(v)}")
        if not is_finite(v):
            raise NonFiniteValue(f"Boundary vertex is not finite: {list(v)}")
        polygon.append((float(v[0]), float(v[1])))
    return polygon


def is_inside(point: Sequence[float], polygon: Sequence[Vertex]) -> bool:
    """Ray casting (edge-crossing parity). O(number of edges)."""
    x, y = point[0], point[1]
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        xi, yi = polygon[i]
        xj, yj = polygon[j]
        if (yi > y) != (yj > y):
            x_cross = (xj - xi) * (y - yi) / (yj - yi) + xi
            if x < x_cross:
                inside = not inside
        j = i
    return inside


def nearest_edge_point(point: Sequence[float], polygon: Sequence[Vertex]) -> Tuple[float, float, float]:
    """
    Project a point onto every polygon edge and keep the closest projection.

    Returns:
        Tuple of (x, y, distance)
    """
    x, y = point[0], point[1]
    best = (x, y, math.inf)

    for i in range(len(polygon)):
        x1, y1 = polygon[i]
        x2, y2 = polygon[(i + 1) % len(polygon)]
        dx = x2 - x1
        dy = y2 - y1
        len2 = dx * dx + dy * dy
        if len2 == 0:
            continue

        # How far along the edge from p1 toward p2, clamped to the segment
        t = ((x - x1) * dx + (y - y1) * dy) / len2
        t = max(0.0, min(1.0, t))

        cx = x1 + t * dx
        cy = y1 + t * dy
        dist = math.hypot(x - cx, y - cy)
        if dist < best[2]:
            best = (cx, cy, dist)

    return best


def interior_reference_point(polygon: Sequence[Vertex]) -> Tuple[float, float]:
    """
    A point guaranteed to lie inside a simple polygon.

    The vertex average is used when it tests inside (always the case for
    convex sites). Otherwise a horizontal scan line between two distinct
    vertex heights is intersected with the edges and the midpoint of the
    first inside span is returned.
    """
    pts = np.asarray(polygon, dtype=float)
    centroid = (float(pts[:, 0].mean()), float(pts[:, 1].mean()))
    if is_inside(centroid, polygon):
        return centroid

    ys = sorted(set(float(v) for v in pts[:, 1]))
    if len(ys) < 2:
        return centroid
    mid = len(ys) // 2
    scan_y = 0.5 * (ys[mid - 1] + ys[mid])

    crossings = []
    for i in range(len(polygon)):
        x1, y1 = polygon[i]
        x2, y2 = polygon[(i + 1) % len(polygon)]
        if (y1 > scan_y) != (y2 > scan_y):
            crossings.append(x1 + (scan_y - y1) * (x2 - x1) / (y2 - y1))
    crossings.sort()
    if len(crossings) < 2:
        return centroid
    return (0.5 * (crossings[0] + crossings[1]), scan_y)


def clamp_to_boundary(
    point: Sequence[float],
    polygon: Sequence[Vertex],
    margin: float = 0.5,
    reference: Optional[Tuple[float, float]] = None,
) -> ClampResult:
    """
    Clamp a point to the polygon.

    If inside: returns the point unchanged.
    If outside: projects to the nearest edge, then moves inward by ``margin``
    along the direction toward the interior reference point. The result
    always tests inside, so clamping is idempotent.
    """
    x, y = float(point[0]), float(point[1])
    if not is_finite((x, y)):
        raise NonFiniteValue(f"Cannot clamp non-finite point ({x}, {y})")

    if is_inside((x, y), polygon):
        return ClampResult(x, y, was_clamped=False)

    nx, ny, distance = nearest_edge_point((x, y), polygon)
    rx, ry = reference if reference is not None else interior_reference_point(polygon)

    dir_x = rx - nx
    dir_y = ry - ny
    dir_len = math.hypot(dir_x, dir_y)
    if dir_len > 0:
        dir_x /= dir_len
        dir_y /= dir_len

    step = min(margin if margin > 0 else MIN_NUDGE, dir_len) if dir_len > 0 else 0.0
    for _ in range(MAX_MARGIN_HALVINGS):
        cx = nx + dir_x * step
        cy = ny + dir_y * step
        if step > 0 and is_inside((cx, cy), polygon):
            return ClampResult(cx, cy, was_clamped=True, distance=distance)
        step *= 0.5

    return ClampResult(rx, ry, was_clamped=True, distance=distance)


class BoundaryGuard:
    """Site boundary with a fixed safety margin."""

    def __init__(self, vertices: Sequence[Sequence[float]], margin: float = 0.5):
        if margin < 0:
            raise ValidationError(f"Boundary margin must be >= 0, got {margin}")
        self.polygon = validate_polygon(vertices)
        self.margin = float(margin)
        self.reference = interior_reference_point(self.polygon)

    def is_inside(self, x: float, y: float) -> bool:
        return is_inside((x, y), self.polygon)

    def clamp(self, x: float, y: float) -> ClampResult:
        return clamp_to_boundary((x, y), self.polygon, self.margin, self.reference)

    def to_dict(self):
        return {"vertices": [list(v) for v in self.polygon], "margin": self.margin}
