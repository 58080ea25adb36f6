"""
Pose synchronization engine for a BIM model viewer and a panorama viewer.

Stages:
1. Condition - smooth and space out the raw pano path
2. Calibrate - fit the pano -> model similarity transform
3. Transform - map positions and orientations between the two frames
4. Guard - keep model positions inside the site boundary
5. Sync - arbitrate pose updates between the viewers
"""

__version__ = "0.1.0"

from .boundary import BoundaryGuard, ClampResult
from .calibration import CalibrationResult, calibrate_or_identity, solve_similarity
from .config import EngineConfig, load_config
from .errors import (
    DegenerateConfiguration,
    InsufficientPoints,
    NonFiniteValue,
    NumericDegeneracy,
    PoseSyncError,
    ValidationError,
)
from .models import CalibrationSet, CorrespondencePair, PathPoint, Point3, Pose, Quaternion, SimilarityTransform
from .orchestrator import SOURCE_A, SOURCE_B, Authority, PoseSyncOrchestrator, SyncOutcome, SyncPhase, SyncState
from .path_conditioner import ConditionedPath, PathConditioner
from .transform import CoordinateTransformPipeline, OrientationPipeline, QuadraticCorrection, calibrate_dataset

__all__ = [
    "BoundaryGuard",
    "ClampResult",
    "CalibrationResult",
    "calibrate_or_identity",
    "solve_similarity",
    "EngineConfig",
    "load_config",
    "DegenerateConfiguration",
    "InsufficientPoints",
    "NonFiniteValue",
    "NumericDegeneracy",
    "PoseSyncError",
    "ValidationError",
    "CalibrationSet",
    "CorrespondencePair",
    "PathPoint",
    "Point3",
    "Pose",
    "Quaternion",
    "SimilarityTransform",
    "SOURCE_A",
    "SOURCE_B",
    "Authority",
    "PoseSyncOrchestrator",
    "SyncOutcome",
    "SyncPhase",
    "SyncState",
    "ConditionedPath",
    "PathConditioner",
    "CoordinateTransformPipeline",
    "OrientationPipeline",
    "QuadraticCorrection",
    "calibrate_dataset",
]
