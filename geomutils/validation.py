"""Validation utilities for calibration files, path datasets and site boundaries."""

import json
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, Field, field_validator

# Default camera height (meters) for frames that carry no vertical coordinate
EYE_HEIGHT = 1.6

POSITION_ALIASES = ("position", "pos", "coordinates")
IMAGE_ALIASES = ("image_path", "image", "img", "texture")
AXIS_ALIASES = {0: ("x", "X"), 1: ("y", "Y"), 2: ("z", "Z")}


def _check_finite(values: List[float]) -> List[float]:
    if not all(math.isfinite(v) for v in values):
        raise ValueError(f"Coordinates must be finite, got {values}")
    return values


# Pydantic models for external input validation


class CorrespondenceRecord(BaseModel):
    source: List[float] = Field(..., min_length=3, max_length=3)
    target: List[float] = Field(..., min_length=3, max_length=3)

    @field_validator("source", "target")
    @classmethod
    def validate_point(cls, v):
        return _check_finite(v)


class CalibrationFile(BaseModel):
    """Pydantic model for persisted correspondence pairs."""

    pairs: List[CorrespondenceRecord]

    @field_validator("pairs")
    @classmethod
    def validate_pairs_list(cls, v):
        if len(v) < 3:
            raise ValueError(f"At least 3 correspondence pairs required, got {len(v)}")
        return v


class DatasetFrame(BaseModel):
    """One frame after alias normalization."""

    position: List[float] = Field(..., min_length=3, max_length=3)
    image_ref: Optional[str] = None

    @field_validator("position")
    @classmethod
    def validate_position(cls, v):
        return _check_finite(v)


class DatasetFile(BaseModel):
    frames: List[DatasetFrame]


class BoundaryDefinition(BaseModel):
    vertices: List[List[float]]
    margin: float = Field(default=0.5, ge=0)

    @field_validator("vertices")
    @classmethod
    def validate_vertices(cls, v):
        if len(v) < 3:
            raise ValueError(f"Boundary needs at least 3 vertices, got {len(v)}")
        for vertex in v:
            if len(vertex) != 2:
                raise ValueError(f"Boundary vertex must have 2 coordinates, got {vertex}")
            _check_finite(vertex)
        return v


def _axis_value(position: Any, axis: int) -> Optional[Any]:
    if isinstance(position, dict):
        for key in AXIS_ALIASES[axis]:
            if position.get(key) is not None:
                return position[key]
        return None
    if isinstance(position, (list, tuple)) and len(position) > axis:
        return position[axis]
    return None


def normalize_frame(record: Any) -> Dict:
    """
    Map one raw dataset frame onto the DatasetFrame field names.

    Position is read from ``position``, ``pos`` or ``coordinates`` (or the
    record itself); each axis from ``x``/``X`` or the list index. A missing
    vertical axis defaults to eye height. The image reference is read from
    ``image_path``, ``image``, ``img`` or ``texture``.

    Raises:
        ValueError: if the record has no usable x or z coordinate
    """
    if isinstance(record, dict):
        position = next((record[k] for k in POSITION_ALIASES if record.get(k) is not None), record)
        image_ref = next((record[k] for k in IMAGE_ALIASES if record.get(k)), None)
    else:
        position = record
        image_ref = None

    x = _axis_value(position, 0)
    y = _axis_value(position, 1)
    z = _axis_value(position, 2)
    if x is None or z is None:
        raise ValueError(f"Frame has no usable x/z position: {record!r}")

    return {
        "position": [x, EYE_HEIGHT if y is None else y, z],
        "image_ref": image_ref,
    }


def _load_json(path: Path) -> Tuple[Optional[Any], List[str]]:
    if not path.exists():
        return None, [f"File does not exist: {path}"]
    try:
        with open(path, "r") as f:
            return json.load(f), []
    except json.JSONDecodeError as e:
        return None, [f"Invalid JSON: {e}"]


def validate_calibration_file(path: Path) -> Tuple[bool, Optional[CalibrationFile], List[str]]:
    """
    Validate a correspondence-pair JSON file.

    Accepts either ``{"pairs": [...]}`` or a bare list of pairs.

    Returns:
        Tuple of (is_valid, parsed_file, list_of_errors)
    """
    data, errors = _load_json(path)
    if errors:
        return False, None, errors

    if isinstance(data, list):
        data = {"pairs": data}
    if not isinstance(data, dict):
        return False, None, ["Calibration file must contain an object or a list of pairs"]

    try:
        return True, CalibrationFile(**data), []
    except Exception as e:
        return False, None, [str(e)]


def validate_dataset_file(path: Path) -> Tuple[bool, Optional[DatasetFile], List[str]]:
    """
    Validate a path dataset JSON file (``{"frames": [...]}``), normalizing
    frame aliases first.

    Returns:
        Tuple of (is_valid, parsed_dataset, list_of_errors)
    """
    data, errors = _load_json(path)
    if errors:
        return False, None, errors

    if not isinstance(data, dict) or not isinstance(data.get("frames"), list):
        return False, None, ["Dataset must be an object with a 'frames' list"]

    frames = []
    for i, record in enumerate(data["frames"]):
        try:
            frames.append(normalize_frame(record))
        except ValueError as e:
            errors.append(f"Frame {i}: {e}")
    if errors:
        return False, None, errors

    try:
        return True, DatasetFile(frames=frames), []
    except Exception as e:
        return False, None, [str(e)]


def validate_boundary_file(path: Path) -> Tuple[bool, Optional[BoundaryDefinition], List[str]]:
    """
    Validate a boundary JSON file: ``{"vertices": [[x, y], ...], "margin": m}``
    or a bare vertex list.

    Returns:
        Tuple of (is_valid, parsed_boundary, list_of_errors)
    """
    data, errors = _load_json(path)
    if errors:
        return False, None, errors

    if isinstance(data, list):
        data = {"vertices": data}
    if not isinstance(data, dict):
        return False, None, ["Boundary file must contain an object or a list of vertices"]

    try:
        return True, BoundaryDefinition(**data), []
    except Exception as e:
        return False, None, [str(e)]


def validate_path(positions: np.ndarray, min_separation: float = 0.05) -> Tuple[bool, Dict, List[str]]:
    """
    Check a waypoint sequence for quality and consistency.

    Checks:
    - Enough samples to smooth
    - Consecutive samples not closer than the minimum separation
    - No sudden position jumps

    Returns:
        Tuple of (is_valid, stats, list_of_warnings)
    """
    positions = np.asarray(positions, dtype=float).reshape(-1, 3)
    warnings = []
    stats = {
        "total_points": len(positions),
        "total_length": 0.0,
        "close_pairs": 0,
        "max_step": 0.0,
    }

    if len(positions) < 2:
        return False, stats, ["Insufficient points (minimum 2 required)"]

    steps = np.linalg.norm(np.diff(positions, axis=0), axis=1)
    stats["total_length"] = float(steps.sum())
    stats["max_step"] = float(steps.max())
    stats["close_pairs"] = int(np.sum(steps < min_separation))

    if stats["close_pairs"]:
        warnings.append(f"{stats['close_pairs']} consecutive pairs closer than {min_separation} m")

    # Check for position jumps
    median_step = float(np.median(steps))
    max_jump = max(5.0, 10 * median_step)
    for i, step in enumerate(steps):
        if step > max_jump:
            warnings.append(f"Large jump ({step:.2f} m) at index {i + 1}")

    is_valid = len([w for w in warnings if "Large jump" in w]) == 0
    return is_valid, stats, warnings
