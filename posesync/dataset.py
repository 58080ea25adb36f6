"""
Dataset Loading

Reads pano path datasets, calibration pairs and site boundaries from JSON,
normalizing them into engine types. Parse failures are raised as
``ValidationError``; the engine core never touches files.
"""

import json
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import pydantic
from rich.console import Console

from geomutils.validation import (
    EYE_HEIGHT,
    BoundaryDefinition,
    DatasetFrame,
    normalize_frame as normalize_frame_record,
    validate_boundary_file,
    validate_calibration_file,
    validate_dataset_file,
)

from .boundary import BoundaryGuard
from .errors import ValidationError
from .models import CalibrationSet, Point3

console = Console()


def normalize_frame(record) -> DatasetFrame:
    """Normalize one raw frame record (field aliases accepted) into a DatasetFrame."""
    try:
        return DatasetFrame(**normalize_frame_record(record))
    except ValueError as e:
        # pydantic.ValidationError is a ValueError subclass
        raise ValidationError(f"Malformed dataset frame: {e}")


def frames_from_records(records: List) -> Tuple[List[Point3], List[Optional[str]]]:
    """Split raw frame records into positions and image references."""
    points = []
    image_refs = []
    for i, record in enumerate(records):
        try:
            frame = normalize_frame(record)
        except ValidationError as e:
            raise ValidationError(f"Frame {i}: {e}")
        points.append(Point3.from_array(frame.position))
        image_refs.append(frame.image_ref)
    return points, image_refs


def load_dataset(dataset_path: Path) -> Tuple[List[Point3], List[Optional[str]]]:
    """
    Load a pano path dataset.

    Args:
        dataset_path: JSON file with a ``frames`` list

    Returns:
        Tuple of (positions, image_refs), in acquisition order
    """
    is_valid, dataset, errors = validate_dataset_file(dataset_path)
    if not is_valid:
        for error in errors:
            console.print(f"[red]  - {error}[/red]")
        raise ValidationError(f"Invalid dataset {dataset_path}: {'; '.join(errors)}")

    points = [Point3.from_array(frame.position) for frame in dataset.frames]
    image_refs = [frame.image_ref for frame in dataset.frames]
    console.print(f"[green]Loaded {len(points)} frames from {dataset_path.name}[/green]")
    return points, image_refs


def load_calibration_set(pairs_path: Path) -> CalibrationSet:
    """Load persisted correspondence pairs."""
    is_valid, parsed, errors = validate_calibration_file(pairs_path)
    if not is_valid:
        raise ValidationError(f"Invalid calibration file {pairs_path}: {'; '.join(errors)}")
    return CalibrationSet.from_points(
        [pair.source for pair in parsed.pairs],
        [pair.target for pair in parsed.pairs],
    )


def save_calibration_set(pairs_path: Path, calibration_set: CalibrationSet):
    """Persist correspondence pairs with millimeter precision."""
    data = {
        "pairs": [
            {
                "source": [round(v, 3) for v in pair.source_point.as_list()],
                "target": [round(v, 3) for v in pair.target_point.as_list()],
            }
            for pair in calibration_set.pairs
        ]
    }
    pairs_path.parent.mkdir(parents=True, exist_ok=True)
    with open(pairs_path, 'w') as f:
        json.dump(data, f, indent=2)


def load_boundary(boundary_path: Path, margin: Optional[float] = None) -> BoundaryGuard:
    """Load a site boundary; ``margin`` overrides the file's margin."""
    is_valid, parsed, errors = validate_boundary_file(boundary_path)
    if not is_valid:
        raise ValidationError(f"Invalid boundary file {boundary_path}: {'; '.join(errors)}")
    return boundary_from_definition(parsed, margin)


def boundary_from_definition(definition: BoundaryDefinition, margin: Optional[float] = None) -> BoundaryGuard:
    return BoundaryGuard(definition.vertices, definition.margin if margin is None else margin)


def parse_boundary(data, margin: Optional[float] = None) -> BoundaryGuard:
    """Build a BoundaryGuard from already-loaded boundary data."""
    if isinstance(data, list):
        data = {"vertices": data}
    try:
        definition = BoundaryDefinition(**data)
    except (TypeError, pydantic.ValidationError) as e:
        raise ValidationError(f"Malformed boundary definition: {e}")
    return boundary_from_definition(definition, margin)


def generate_synthetic_path(
    steps: int = 200,
    segment: int = 20,
    seed: Optional[int] = 0,
    noise: float = 0.08,
    height_noise: float = 0.05,
) -> List[Point3]:
    """
    Square-spiral walk at eye height with positional jitter.

    Heading turns 90 degrees every ``segment`` steps and step length grows
    within each segment, which gives a path with corners and uneven spacing
    for exercising the conditioner.
    """
    rng = np.random.default_rng(seed)
    directions = [(1.0, 0.0), (0.0, 1.0), (-1.0, 0.0), (0.0, -1.0)]

    points = []
    cx, cz = 0.0, 0.0
    heading = 0
    for i in range(steps):
        dx, dz = directions[heading % 4]
        length = 0.5 + (i % segment) * 0.02
        cx += dx * length
        cz += dz * length
        points.append(Point3(
            cx + (rng.random() - 0.5) * noise,
            EYE_HEIGHT + (rng.random() - 0.5) * height_noise,
            cz + (rng.random() - 0.5) * noise,
        ))
        if (i + 1) % segment == 0:
            heading += 1

    return points
