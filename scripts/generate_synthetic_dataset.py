#!/usr/bin/env python3
"""
Generate a synthetic pano site: path dataset, calibration pairs and boundary.

Walks a noisy square spiral at eye height, and maps a few landmarks into a
made-up model frame with a known similarity transform so the calibration
can be checked against ground truth.

Usage:
    python scripts/generate_synthetic_dataset.py [output_dir]

Then run:
    posesync calibrate synthetic_site/pairs.json
    posesync condition synthetic_site/dataset.json --output synthetic_site/path.json
"""

import json
import math
import sys
from pathlib import Path

import numpy as np

from posesync.dataset import generate_synthetic_path


# ── Ground truth pano -> model transform ─────────────────────────────

MODEL_SCALE = 1.0
MODEL_YAW = math.radians(30.0)
MODEL_TRANSLATION = np.array([120.0, -45.0, 0.0])

# Pano landmarks (dataset frame, y up) picked as calibration points
LANDMARKS = [
    (0.0, 0.0, 0.0),
    (10.0, 0.0, 0.0),
    (0.0, 0.0, 10.0),
    (10.0, 2.5, 10.0),
]


def pano_to_model(p):
    """Flip x, swap to z-up, then rotate/scale/translate."""
    x, y, z = -p[0], p[1], p[2]
    ground = np.array([x, z, y])
    c, s = math.cos(MODEL_YAW), math.sin(MODEL_YAW)
    R = np.array([[c, -s, 0], [s, c, 0], [0, 0, 1]])
    return MODEL_SCALE * R @ ground + MODEL_TRANSLATION


def main():
    output_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("synthetic_site")
    output_dir.mkdir(parents=True, exist_ok=True)

    # Path dataset, mixing field aliases the loader accepts
    points = generate_synthetic_path(steps=200, segment=20, seed=0)
    frames = []
    for i, p in enumerate(points):
        if i % 3 == 0:
            frames.append({"position": {"x": p.x, "y": p.y, "z": p.z}, "image_path": f"pano_{i:04d}.jpg"})
        elif i % 3 == 1:
            frames.append({"pos": [p.x, p.y, p.z], "img": f"pano_{i:04d}.jpg"})
        else:
            frames.append({"coordinates": {"X": p.x, "Y": p.y, "Z": p.z}, "texture": f"pano_{i:04d}.jpg"})

    with open(output_dir / "dataset.json", "w") as f:
        json.dump({"frames": frames}, f, indent=2)

    # Calibration pairs
    pairs = [
        {"source": list(p), "target": [round(v, 3) for v in pano_to_model(p)]}
        for p in LANDMARKS
    ]
    with open(output_dir / "pairs.json", "w") as f:
        json.dump({"pairs": pairs}, f, indent=2)

    # Site boundary around the mapped path, in model x/y
    mapped = np.array([pano_to_model(p.as_list()) for p in points])
    lo = mapped[:, :2].min(axis=0) - 2.0
    hi = mapped[:, :2].max(axis=0) + 2.0
    boundary = {
        "vertices": [[lo[0], lo[1]], [hi[0], lo[1]], [hi[0], hi[1]], [lo[0], hi[1]]],
        "margin": 0.5,
    }
    with open(output_dir / "boundary.json", "w") as f:
        json.dump(boundary, f, indent=2)

    print(f"Wrote {len(frames)} frames, {len(pairs)} pairs and a boundary to {output_dir}")


if __name__ == "__main__":
    main()
