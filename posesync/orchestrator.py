"""
Pose Synchronization Orchestrator

Keeps the BIM model viewer (source A) and the panorama viewer (source B)
looking at the same place. Whichever viewer the user moves becomes the
authority; the other one is animated toward the transformed pose.

Loop prevention:
- Every pose the orchestrator applies carries a single-use token. A report
  echoing a live token is dropped.
- Applying a pose also opens a short suppression window for the driven
  viewer. Any report from that viewer inside the window is dropped.
- Each accepted report or jump bumps the generation counter; an animation
  whose generation is no longer current is discarded on the next tick.

All mutation goes through this class. ``state`` returns an immutable
snapshot.
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Protocol, Sequence, Tuple

import numpy as np
from rich.console import Console

from geomutils.matrix import lerp, quaternion_angle, slerp, yaw_to_quaternion

from .boundary import BoundaryGuard, ClampResult
from .config import EngineConfig
from .errors import NonFiniteValue, ValidationError
from .models import PathPoint, Point3, Pose, Quaternion
from .path_conditioner import nearest_path_index
from .transform import CoordinateTransformPipeline

console = Console()


class Authority(Enum):
    NONE = "none"
    SOURCE_A = "source_a"  # BIM model viewer
    SOURCE_B = "source_b"  # panorama viewer


SOURCE_A = Authority.SOURCE_A
SOURCE_B = Authority.SOURCE_B


def other_source(source: Authority) -> Authority:
    if source is SOURCE_A:
        return SOURCE_B
    if source is SOURCE_B:
        return SOURCE_A
    raise ValidationError(f"Not a pose source: {source}")


class SyncPhase(Enum):
    IDLE = "idle"
    ANIMATING_TO_A = "animating_to_a"
    ANIMATING_TO_B = "animating_to_b"


class SyncOutcome(Enum):
    ACCEPTED = "accepted"
    SUPPRESSED_TOKEN = "suppressed_token"
    SUPPRESSED_WINDOW = "suppressed_window"
    BELOW_NOISE = "below_noise"
    INVALID = "invalid"


@dataclass(frozen=True)
class SyncState:
    """Snapshot of the shared sync state."""
    authority: Authority = Authority.NONE
    phase: SyncPhase = SyncPhase.IDLE
    generation: int = 0
    last_update_time: float = 0.0
    suppressed_sources: FrozenSet[Authority] = frozenset()
    suppressed_until: float = 0.0

    def is_suppressed(self, source: Authority, now: float) -> bool:
        return source in self.suppressed_sources and now < self.suppressed_until


@dataclass(frozen=True)
class ReportResult:
    outcome: SyncOutcome
    generation: int
    target_pose: Optional[Pose] = None
    clamp: Optional[ClampResult] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is SyncOutcome.ACCEPTED


@dataclass(frozen=True)
class JumpResult:
    index: int
    path_point: PathPoint
    pano_pose: Pose
    model_pose: Pose
    generation: int
    clamp: Optional[ClampResult] = None


@dataclass
class SyncStats:
    """Counters for report decisions and applied frames."""
    reports: Dict[str, int] = field(default_factory=lambda: {o.value: 0 for o in SyncOutcome})
    frames_applied: int = 0
    stale_ticks: int = 0
    jumps: int = 0
    clamped: int = 0

    def record(self, outcome: SyncOutcome):
        self.reports[outcome.value] += 1

    def count(self, outcome: SyncOutcome) -> int:
        return self.reports[outcome.value]

    def to_dict(self) -> Dict:
        return {
            "reports": dict(self.reports),
            "frames_applied": self.frames_applied,
            "stale_ticks": self.stale_ticks,
            "jumps": self.jumps,
            "clamped": self.clamped,
        }


class PoseConsumer(Protocol):
    """Viewer side of the sync: receives poses driven by the orchestrator."""

    def apply_pose(self, pose: Pose, *, animate: bool, token: str) -> None:
        ...


@dataclass
class _Transition:
    generation: int
    target: Authority
    start: Pose
    end: Pose
    duration: float
    elapsed: float = 0.0


class PoseSyncOrchestrator:
    """Single owner of SyncState; arbitrates pose updates between two viewers."""

    def __init__(
        self,
        pipeline: Optional[CoordinateTransformPipeline] = None,
        config: Optional[EngineConfig] = None,
        path: Optional[Sequence[PathPoint]] = None,
        boundary: Optional[BoundaryGuard] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or EngineConfig()
        self._pipeline = pipeline or CoordinateTransformPipeline(flip_axis=self.config.flip_axis)
        self._path: Tuple[PathPoint, ...] = tuple(path or ())
        self._boundary = boundary
        self._clock = clock

        self._state = SyncState(last_update_time=clock())
        self._stats = SyncStats()
        self._consumers: Dict[Authority, PoseConsumer] = {}
        self._tokens: Dict[str, Tuple[Authority, float]] = {}
        self._transition: Optional[_Transition] = None

        # Last pose reported by each viewer and last pose we applied to each
        self._reported: Dict[Authority, Pose] = {}
        self._applied: Dict[Authority, Pose] = {}

    # Read-only views

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def stats(self) -> SyncStats:
        return self._stats

    @property
    def pipeline(self) -> CoordinateTransformPipeline:
        return self._pipeline

    @property
    def path(self) -> Tuple[PathPoint, ...]:
        return self._path

    @property
    def boundary(self) -> Optional[BoundaryGuard]:
        return self._boundary

    @property
    def is_animating(self) -> bool:
        return self._transition is not None

    @property
    def live_token_count(self) -> int:
        return len(self._tokens)

    def is_current(self, generation: int) -> bool:
        return generation == self._state.generation

    def current_pose(self, source: Authority) -> Optional[Pose]:
        """Latest known pose of a viewer, reported or applied."""
        return self._applied.get(source) if source in self._applied else self._reported.get(source)

    # Wiring and atomic replacement

    def attach(self, source: Authority, consumer: PoseConsumer):
        other_source(source)
        self._consumers[source] = consumer

    def set_calibration(self, pipeline: CoordinateTransformPipeline):
        """Swap the transform; animations computed with the old one become stale."""
        self._pipeline = pipeline
        self._state = replace(self._state, generation=self._state.generation + 1)

    def set_path(self, points: Sequence[PathPoint]):
        self._path = tuple(points)

    def set_boundary(self, boundary: Optional[BoundaryGuard]):
        self._boundary = boundary

    # Internal helpers

    def _log(self, message: str):
        if self.config.verbose:
            console.print(f"[dim]{message}[/dim]")

    def _expire_tokens(self, now: float):
        expired = [t for t, (_, expires_at) in self._tokens.items() if expires_at <= now]
        for t in expired:
            del self._tokens[t]

    def _issue_token(self, target: Authority, now: float) -> str:
        token = uuid.uuid4().hex
        self._tokens[token] = (target, now + self.config.suppression_window)
        return token

    def _is_noise(self, previous: Optional[Pose], pose: Pose) -> bool:
        if previous is None:
            return False
        moved = previous.position.distance_to(pose.position)
        turned = quaternion_angle(previous.orientation.as_array(), pose.orientation.as_array())
        return (moved < self.config.position_noise_threshold
                and turned < self.config.orientation_noise_threshold)

    def _to_target(self, source: Authority, pose: Pose) -> Tuple[Pose, Optional[ClampResult]]:
        """Transform a pose reported by ``source`` into the other viewer's frame."""
        if source is SOURCE_B:
            target_pose = self._pipeline.forward_pose(pose)
            return self._clamp_model_pose(target_pose)
        return self._pipeline.inverse_pose(pose), None

    def _clamp_model_pose(self, pose: Pose) -> Tuple[Pose, Optional[ClampResult]]:
        if self._boundary is None:
            return pose, None
        result = self._boundary.clamp(pose.position.x, pose.position.y)
        if not result.was_clamped:
            return pose, result
        self._stats.clamped += 1
        self._log(f"Clamped model pose by {result.distance:.3f} m")
        return Pose(Point3(result.x, result.y, pose.position.z), pose.orientation), result

    def _apply(self, target: Authority, pose: Pose, animate: bool, now: float):
        """Push a pose to a viewer, tag it and open the suppression window for it."""
        token = self._issue_token(target, now)
        self._applied[target] = pose
        consumer = self._consumers.get(target)
        if consumer is not None:
            consumer.apply_pose(pose, animate=animate, token=token)
        self._stats.frames_applied += 1

    def _suppress(self, sources: FrozenSet[Authority], now: float, **changes):
        self._state = replace(
            self._state,
            suppressed_sources=sources,
            suppressed_until=now + self.config.suppression_window,
            **changes,
        )

    # Events

    def report_pose(self, source: Authority, pose: Pose, token: Optional[str] = None) -> ReportResult:
        """
        Handle a pose reported by a viewer.

        Decision order: echoed token, suppression window, noise, accept.
        Accepting makes ``source`` the authority, bumps the generation and
        starts animating the other viewer toward the transformed pose.
        """
        target = other_source(source)
        now = self._clock()
        self._expire_tokens(now)
        generation = self._state.generation

        # 1. Echo of a pose we applied
        if token is not None and token in self._tokens:
            token_source, _ = self._tokens[token]
            if token_source is source:
                del self._tokens[token]
                self._stats.record(SyncOutcome.SUPPRESSED_TOKEN)
                self._log(f"Dropped {source.value} report carrying live token")
                return ReportResult(SyncOutcome.SUPPRESSED_TOKEN, generation)

        # 2. Inside the suppression window of a viewer we are driving
        if self._state.is_suppressed(source, now):
            self._stats.record(SyncOutcome.SUPPRESSED_WINDOW)
            self._log(f"Dropped {source.value} report inside suppression window")
            return ReportResult(SyncOutcome.SUPPRESSED_WINDOW, generation)

        # 3. Redundant churn from the authority, or a late echo of our own pose
        if source is self._state.authority:
            previous = self._reported.get(source)
        else:
            previous = self._applied.get(source)
        if self._is_noise(previous, pose):
            self._stats.record(SyncOutcome.BELOW_NOISE)
            return ReportResult(SyncOutcome.BELOW_NOISE, generation)

        # 4. Accept
        try:
            target_pose, clamp = self._to_target(source, pose)
        except NonFiniteValue as e:
            console.print(f"[yellow]Warning: rejected {source.value} pose: {e}[/yellow]")
            self._stats.record(SyncOutcome.INVALID)
            return ReportResult(SyncOutcome.INVALID, generation)

        self._reported[source] = pose
        self._applied.pop(source, None)
        generation += 1

        start = self.current_pose(target) or target_pose
        self._transition = _Transition(
            generation=generation,
            target=target,
            start=start,
            end=target_pose,
            duration=self.config.interpolation_duration,
        )
        phase = SyncPhase.ANIMATING_TO_A if target is SOURCE_A else SyncPhase.ANIMATING_TO_B
        self._state = replace(
            self._state,
            authority=source,
            phase=phase,
            generation=generation,
            last_update_time=now,
        )

        self._stats.record(SyncOutcome.ACCEPTED)
        self._log(f"Accepted {source.value} pose, generation {generation}")
        return ReportResult(SyncOutcome.ACCEPTED, generation, target_pose, clamp)

    def tick(self, delta_time: float) -> Optional[Pose]:
        """
        Advance the active animation by ``delta_time`` seconds.

        Returns:
            The pose applied this tick, or None when idle or the animation
            was stale
        """
        now = self._clock()
        self._expire_tokens(now)

        transition = self._transition
        if transition is None:
            return None

        if not self.is_current(transition.generation):
            self._transition = None
            self._stats.stale_ticks += 1
            self._state = replace(self._state, phase=SyncPhase.IDLE)
            return None

        transition.elapsed += max(0.0, float(delta_time))
        t = min(1.0, max(0.0, transition.elapsed / transition.duration))

        position = lerp(transition.start.position.as_array(), transition.end.position.as_array(), t)
        orientation = slerp(transition.start.orientation.as_array(), transition.end.orientation.as_array(), t)
        if not np.all(np.isfinite(position)) or not np.all(np.isfinite(orientation)):
            console.print("[yellow]Warning: interpolation produced non-finite pose, animation dropped[/yellow]")
            self._transition = None
            self._state = replace(self._state, phase=SyncPhase.IDLE)
            return None

        pose = Pose(Point3.from_array(position), Quaternion.from_array(orientation))
        self._apply(transition.target, pose, animate=True, now=now)

        changes = {}
        if t >= 1.0:
            self._transition = None
            changes["phase"] = SyncPhase.IDLE
        self._suppress(frozenset({transition.target}), now, **changes)
        return pose

    def request_floor_jump(self, point, source: Authority = SOURCE_A) -> JumpResult:
        """
        Jump both viewers to the path sample nearest a clicked point.

        Args:
            point: Clicked point. From the model viewer a 2D floor point
                (z = floor height) or a Point3; from the pano viewer a Point3
                in dataset coordinates.
            source: Viewer the click came from

        Returns:
            JumpResult with the chosen sample and both applied poses
        """
        other_source(source)
        if not self._path:
            raise ValidationError("Cannot jump: no conditioned path loaded")

        if isinstance(point, Point3):
            query = point
        elif len(point) == 2 and source is SOURCE_A:
            query = Point3(float(point[0]), float(point[1]), self.config.floor_height)
        else:
            query = Point3.from_array(point)

        if source is SOURCE_A:
            query = self._pipeline.inverse_position(query)

        index = nearest_path_index(self._path, query)
        sample = self._path[index]

        known = self.current_pose(SOURCE_B)
        orientation = known.orientation if known is not None else \
            Quaternion.from_array(yaw_to_quaternion(sample.yaw, sample.pitch))
        pano_pose = Pose(sample.position, orientation)
        model_pose, clamp = self._clamp_model_pose(self._pipeline.forward_pose(pano_pose))

        now = self._clock()
        self._expire_tokens(now)
        generation = self._state.generation + 1
        self._transition = None
        self._reported[source] = model_pose if source is SOURCE_A else pano_pose

        self._apply(SOURCE_B, pano_pose, animate=False, now=now)
        self._apply(SOURCE_A, model_pose, animate=False, now=now)
        self._suppress(
            frozenset({SOURCE_A, SOURCE_B}),
            now,
            authority=source,
            phase=SyncPhase.IDLE,
            generation=generation,
            last_update_time=now,
        )

        self._stats.jumps += 1
        self._log(f"Floor jump to path index {index}, generation {generation}")
        return JumpResult(index, sample, pano_pose, model_pose, generation, clamp)
