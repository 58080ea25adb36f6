import sys
from pathlib import Path

import numpy as np

from geomutils.validation import validate_path
from posesync.config import EngineConfig
from posesync.dataset import load_dataset
from posesync.path_conditioner import PathConditioner


def analyze_path(json_path, manhattan=False):
    points, refs = load_dataset(Path(json_path))
    raw = np.array([p.as_list() for p in points])

    print(f"Loading {len(raw)} frames...")

    # Stuck frames: less than 1mm movement
    steps = np.linalg.norm(np.diff(raw, axis=0), axis=1)
    stuck_frames = int(np.sum(steps < 0.001))
    missing_images = sum(1 for r in refs if r is None)

    is_valid, stats, warnings = validate_path(raw)

    print("Raw path:")
    print(f"  Total Frames: {stats['total_points']}")
    print(f"  Length: {stats['total_length']:.2f} m")
    print(f"  Max step: {stats['max_step']:.3f} m")
    print(f"  Stuck Frames (Zero Movement): {stuck_frames}")
    print(f"  Frames without image: {missing_images}")
    for w in warnings:
        print(f"  WARNING: {w}")

    config = EngineConfig(manhattan=manhattan)
    result = PathConditioner(config).condition(points, refs)
    conditioned = result.positions()
    drift = np.linalg.norm(conditioned - raw, axis=1)

    print("Conditioned path:")
    print(f"  Length: {result.stats['total_length']:.2f} m")
    print(f"  Min separation: {result.stats['min_separation']:.3f} m")
    print(f"  Separation repairs: {result.stats['repairs']}")
    print(f"  Mean drift from raw: {drift.mean():.3f} m (max {drift.max():.3f} m)")
    for w in result.warnings:
        print(f"  WARNING: {w}")

    if not is_valid:
        print("Raw path has large jumps; check the dataset ordering.")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python debug_path.py <dataset.json> [--manhattan]")
    else:
        analyze_path(sys.argv[1], manhattan="--manhattan" in sys.argv[2:])
