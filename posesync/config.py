"""
Engine Configuration

Tunables for path conditioning, calibration and pose synchronization.
Every field has a default; a JSON file may override any subset.
"""

import json
import math
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Dict, Optional

from rich.console import Console

from .errors import NonFiniteValue, ValidationError

console = Console()

FLOAT_FIELDS = (
    "process_noise", "measurement_noise", "min_separation", "manhattan_height",
    "interpolation_duration", "position_noise_threshold", "orientation_noise_threshold",
    "suppression_window", "boundary_margin", "floor_height",
)


@dataclass
class EngineConfig:
    """Configuration for the sync engine."""
    # Savitzky-Golay smoothing
    smoothing_window: int = 11
    smoothing_order: int = 3

    # Kalman filtering
    process_noise: float = 1e-3
    measurement_noise: float = 1e-2

    # Minimum-separation repair
    min_separation: float = 0.05
    repair_seed: Optional[int] = 0

    # Manhattan (axis-snapped) path
    manhattan: bool = False
    manhattan_lookahead: int = 5
    manhattan_hysteresis: int = 2
    manhattan_height: Optional[float] = None  # None = mean height of the path

    # Pose synchronization
    interpolation_duration: float = 0.3  # seconds
    position_noise_threshold: float = 1e-3  # meters
    orientation_noise_threshold: float = 1e-2  # radians
    suppression_window: float = 0.1  # seconds

    # Boundary / coordinate frames
    boundary_margin: float = 0.5  # meters
    flip_axis: Optional[int] = 0
    floor_height: float = 0.0

    verbose: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self):
        for name in FLOAT_FIELDS:
            value = getattr(self, name)
            if value is not None and not math.isfinite(value):
                raise NonFiniteValue(f"{name} must be finite, got {value}")
        if self.smoothing_window < 3 or self.smoothing_window % 2 == 0:
            raise ValidationError(
                f"smoothing_window must be an odd integer >= 3, got {self.smoothing_window}"
            )
        if self.smoothing_order < 0:
            raise ValidationError(f"smoothing_order must be >= 0, got {self.smoothing_order}")
        for name in ("process_noise", "measurement_noise", "min_separation", "interpolation_duration"):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ("position_noise_threshold", "orientation_noise_threshold",
                     "suppression_window", "boundary_margin"):
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.manhattan_lookahead < 1:
            raise ValidationError(f"manhattan_lookahead must be >= 1, got {self.manhattan_lookahead}")
        if self.manhattan_hysteresis < 1:
            raise ValidationError(f"manhattan_hysteresis must be >= 1, got {self.manhattan_hysteresis}")
        if self.flip_axis is not None and self.flip_axis not in (0, 1, 2):
            raise ValidationError(f"flip_axis must be 0, 1, 2 or None, got {self.flip_axis}")

    def to_dict(self) -> Dict:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict) -> "EngineConfig":
        """Build a config from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(EngineConfig)}
        unknown = sorted(set(d) - known)
        if unknown:
            console.print(f"[yellow]Warning: ignoring unknown config keys: {', '.join(unknown)}[/yellow]")
        try:
            return EngineConfig(**{k: v for k, v in d.items() if k in known})
        except TypeError as e:
            raise ValidationError(f"Invalid config: {e}")


def load_config(config_path: Optional[Path] = None, **overrides) -> EngineConfig:
    """
    Load configuration from a JSON file and apply overrides.

    Args:
        config_path: Optional path to a JSON object of config fields
        **overrides: Field values that take precedence (None values are skipped)

    Returns:
        Validated EngineConfig
    """
    data: Dict = {}
    if config_path is not None:
        if not config_path.exists():
            raise ValidationError(f"Config file not found: {config_path}")
        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Invalid JSON in config: {e}")
        if not isinstance(data, dict):
            raise ValidationError("Config file must contain a JSON object")

    data.update({k: v for k, v in overrides.items() if v is not None})
    return EngineConfig.from_dict(data)
