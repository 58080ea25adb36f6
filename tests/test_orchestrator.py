"""Tests for the pose synchronization orchestrator."""

import dataclasses

import numpy as np
import pytest

from posesync.boundary import BoundaryGuard
from posesync.config import EngineConfig
from posesync.errors import ValidationError
from posesync.models import PathPoint, Point3, Pose, Quaternion, SimilarityTransform
from posesync.orchestrator import (
    SOURCE_A,
    SOURCE_B,
    Authority,
    PoseSyncOrchestrator,
    SyncOutcome,
    SyncPhase,
)
from posesync.scheduler import ManualClock
from posesync.transform import CoordinateTransformPipeline


class RecordingViewer:
    """Viewer stand-in that records every applied pose."""

    def __init__(self):
        self.applied = []

    def apply_pose(self, pose, *, animate, token):
        self.applied.append((pose, animate, token))

    @property
    def last(self):
        return self.applied[-1]


def pose_at(x, y=0.0, z=0.0, q=None):
    return Pose(Point3(x, y, z), q or Quaternion.identity())


@pytest.fixture
def clock():
    return ManualClock(100.0)


@pytest.fixture
def viewers():
    return {SOURCE_A: RecordingViewer(), SOURCE_B: RecordingViewer()}


@pytest.fixture
def orchestrator(clock, viewers):
    pipeline = CoordinateTransformPipeline(flip_axis=None)
    orch = PoseSyncOrchestrator(pipeline, EngineConfig(), clock=clock)
    for source, viewer in viewers.items():
        orch.attach(source, viewer)
    return orch


def run_to_idle(orch, clock, dt=0.05, limit=100):
    frames = 0
    while orch.is_animating and frames < limit:
        clock.advance(dt)
        orch.tick(dt)
        frames += 1
    return frames


class TestInitialState:
    def test_idle(self, orchestrator):
        state = orchestrator.state

        assert state.authority is Authority.NONE
        assert state.phase is SyncPhase.IDLE
        assert state.generation == 0

    def test_state_is_immutable(self, orchestrator):
        with pytest.raises(dataclasses.FrozenInstanceError):
            orchestrator.state.generation = 5

    def test_tick_when_idle(self, orchestrator):
        assert orchestrator.tick(0.016) is None

    def test_attach_requires_source(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.attach(Authority.NONE, RecordingViewer())


class TestReportPose:
    """Accepting reports and animating the other viewer."""

    def test_accept_sets_authority(self, orchestrator):
        result = orchestrator.report_pose(SOURCE_B, pose_at(1.0))

        assert result.accepted
        assert result.generation == 1
        state = orchestrator.state
        assert state.authority is SOURCE_B
        assert state.phase is SyncPhase.ANIMATING_TO_A
        assert state.generation == 1

    def test_target_pose_is_transformed(self, orchestrator):
        pose = pose_at(1.0, 2.0, 3.0)
        result = orchestrator.report_pose(SOURCE_B, pose)

        expected = orchestrator.pipeline.forward_pose(pose)
        assert result.target_pose == expected

    def test_animation_reaches_target(self, orchestrator, viewers, clock):
        result = orchestrator.report_pose(SOURCE_B, pose_at(4.0))
        run_to_idle(orchestrator, clock)

        final, animate, token = viewers[SOURCE_A].last
        assert animate
        assert token
        assert final.position.distance_to(result.target_pose.position) < 1e-9
        assert orchestrator.state.phase is SyncPhase.IDLE

    def test_interpolation_midpoint(self, orchestrator, viewers, clock):
        # Establish where the model viewer is
        orchestrator.report_pose(SOURCE_A, pose_at(0.0))
        run_to_idle(orchestrator, clock)
        clock.advance(1.0)

        result = orchestrator.report_pose(SOURCE_B, pose_at(10.0))
        start = orchestrator.current_pose(SOURCE_A)
        clock.advance(0.15)
        mid = orchestrator.tick(0.15)

        expected = 0.5 * (start.position.as_array() + result.target_pose.position.as_array())
        np.testing.assert_allclose(mid.position.as_array(), expected, atol=1e-9)
        assert orchestrator.state.phase is SyncPhase.ANIMATING_TO_A

    def test_below_noise_from_authority(self, orchestrator, clock):
        orchestrator.report_pose(SOURCE_A, pose_at(1.0))
        clock.advance(0.01)

        result = orchestrator.report_pose(SOURCE_A, pose_at(1.0001))

        assert result.outcome is SyncOutcome.BELOW_NOISE
        assert orchestrator.state.generation == 1

    def test_authority_update_above_noise(self, orchestrator, clock):
        orchestrator.report_pose(SOURCE_A, pose_at(1.0))
        clock.advance(0.01)

        result = orchestrator.report_pose(SOURCE_A, pose_at(1.5))

        assert result.accepted
        assert orchestrator.state.generation == 2

    def test_rotation_counts_as_movement(self, orchestrator, clock):
        orchestrator.report_pose(SOURCE_A, pose_at(1.0))
        clock.advance(0.01)

        turned = Quaternion.from_array([0.0, 0.0, 0.2, 0.98])
        result = orchestrator.report_pose(SOURCE_A, pose_at(1.0, q=turned))

        assert result.accepted

    def test_new_report_supersedes_animation(self, orchestrator, viewers, clock):
        orchestrator.report_pose(SOURCE_A, pose_at(0.0))
        clock.advance(0.05)
        orchestrator.tick(0.05)

        second = orchestrator.report_pose(SOURCE_A, pose_at(20.0))
        run_to_idle(orchestrator, clock)

        final = viewers[SOURCE_B].last[0]
        assert final.position.distance_to(second.target_pose.position) < 1e-9
        assert orchestrator.state.generation == 2

    def test_model_target_clamped(self, orchestrator):
        orchestrator.set_boundary(BoundaryGuard([(0, 0), (10, 0), (10, 10), (0, 10)], margin=0.5))

        result = orchestrator.report_pose(SOURCE_B, pose_at(15.0, 5.0, 1.0))

        assert result.clamp.was_clamped
        assert result.target_pose.position.x == pytest.approx(9.5)
        assert result.target_pose.position.z == pytest.approx(1.0)
        assert orchestrator.stats.clamped == 1

    def test_non_finite_transform_is_invalid(self, clock):
        pipeline = CoordinateTransformPipeline(
            SimilarityTransform(np.eye(3), 1e10, Point3(0.0, 0.0, 0.0)), flip_axis=None
        )
        orch = PoseSyncOrchestrator(pipeline, clock=clock)

        result = orch.report_pose(SOURCE_B, pose_at(1e300))

        assert result.outcome is SyncOutcome.INVALID
        assert orch.state.generation == 0
        assert orch.state.authority is Authority.NONE


class TestLoopPrevention:
    """Driven poses echoed back never take authority."""

    def test_token_echo_suppressed(self, orchestrator, viewers, clock):
        orchestrator.report_pose(SOURCE_A, pose_at(3.0))
        clock.advance(0.016)
        orchestrator.tick(0.016)

        echo, _, token = viewers[SOURCE_B].last
        result = orchestrator.report_pose(SOURCE_B, echo, token=token)

        assert result.outcome is SyncOutcome.SUPPRESSED_TOKEN
        assert orchestrator.state.authority is SOURCE_A

    def test_window_echo_suppressed(self, orchestrator, viewers, clock):
        orchestrator.report_pose(SOURCE_A, pose_at(3.0))
        clock.advance(0.016)
        orchestrator.tick(0.016)
        clock.advance(0.05)

        result = orchestrator.report_pose(SOURCE_B, pose_at(-8.0))

        assert result.outcome is SyncOutcome.SUPPRESSED_WINDOW
        assert orchestrator.state.authority is SOURCE_A

    def test_round_trip_simulation(self, orchestrator, viewers, clock):
        """Every driven frame is echoed, with and without its token; A keeps authority."""
        dt = 1.0 / 60.0
        for step in range(5):
            orchestrator.report_pose(SOURCE_A, pose_at(float(step), 0.0, 2.0 * step))
            generation = orchestrator.state.generation

            while orchestrator.is_animating:
                clock.advance(dt)
                orchestrator.tick(dt)
                echo, _, token = viewers[SOURCE_B].last

                with_token = orchestrator.report_pose(SOURCE_B, echo, token=token)
                without_token = orchestrator.report_pose(SOURCE_B, echo)

                assert with_token.outcome is SyncOutcome.SUPPRESSED_TOKEN
                assert without_token.outcome is SyncOutcome.SUPPRESSED_WINDOW
                assert orchestrator.state.authority is SOURCE_A
                assert orchestrator.state.generation == generation

            clock.advance(0.5)

        stats = orchestrator.stats
        assert stats.count(SyncOutcome.ACCEPTED) == 5
        assert stats.count(SyncOutcome.SUPPRESSED_TOKEN) == stats.count(SyncOutcome.SUPPRESSED_WINDOW)

    def test_late_echo_is_noise(self, orchestrator, viewers, clock):
        """An echo arriving after the window still matches the driven pose."""
        orchestrator.report_pose(SOURCE_A, pose_at(3.0))
        run_to_idle(orchestrator, clock)
        clock.advance(1.0)

        echo = viewers[SOURCE_B].last[0]
        result = orchestrator.report_pose(SOURCE_B, echo)

        assert result.outcome is SyncOutcome.BELOW_NOISE
        assert orchestrator.state.authority is SOURCE_A

    def test_token_single_use(self, orchestrator, viewers, clock):
        orchestrator.report_pose(SOURCE_A, pose_at(3.0))
        clock.advance(0.016)
        orchestrator.tick(0.016)
        echo, _, token = viewers[SOURCE_B].last

        first = orchestrator.report_pose(SOURCE_B, echo, token=token)
        second = orchestrator.report_pose(SOURCE_B, echo, token=token)

        assert first.outcome is SyncOutcome.SUPPRESSED_TOKEN
        assert second.outcome is SyncOutcome.SUPPRESSED_WINDOW

    def test_token_from_other_viewer_stays_live(self, orchestrator, viewers, clock):
        """A token echoed by the wrong viewer is not consumed."""
        orchestrator.report_pose(SOURCE_A, pose_at(3.0))
        clock.advance(0.016)
        orchestrator.tick(0.016)
        echo, _, token = viewers[SOURCE_B].last

        wrong = orchestrator.report_pose(SOURCE_A, pose_at(3.0), token=token)
        right = orchestrator.report_pose(SOURCE_B, echo, token=token)

        assert wrong.outcome is SyncOutcome.BELOW_NOISE
        assert right.outcome is SyncOutcome.SUPPRESSED_TOKEN

    def test_tokens_expire_without_echoes(self, orchestrator, clock):
        """Ticking alone keeps the token table bounded by the suppression window."""
        orchestrator.report_pose(SOURCE_A, pose_at(3.0))
        dt = 0.01
        for _ in range(40):
            clock.advance(dt)
            orchestrator.tick(dt)
            assert orchestrator.live_token_count <= 12

        assert not orchestrator.is_animating
        clock.advance(1.0)
        orchestrator.tick(dt)
        assert orchestrator.live_token_count == 0

    def test_user_takeover_after_window(self, orchestrator, viewers, clock):
        orchestrator.report_pose(SOURCE_A, pose_at(3.0))
        run_to_idle(orchestrator, clock)
        clock.advance(1.0)

        result = orchestrator.report_pose(SOURCE_B, pose_at(-5.0, 1.6, 2.0))

        assert result.accepted
        assert orchestrator.state.authority is SOURCE_B
        assert orchestrator.state.phase is SyncPhase.ANIMATING_TO_A


class TestStaleGeneration:
    def test_recalibration_discards_animation(self, orchestrator, viewers, clock):
        orchestrator.report_pose(SOURCE_B, pose_at(5.0))
        applied_before = len(viewers[SOURCE_A].applied)

        orchestrator.set_calibration(CoordinateTransformPipeline(flip_axis=0))
        result = orchestrator.tick(0.05)

        assert result is None
        assert len(viewers[SOURCE_A].applied) == applied_before
        assert orchestrator.stats.stale_ticks == 1
        assert orchestrator.state.phase is SyncPhase.IDLE
        assert not orchestrator.is_animating

    def test_is_current(self, orchestrator):
        result = orchestrator.report_pose(SOURCE_A, pose_at(1.0))
        assert orchestrator.is_current(result.generation)
        assert not orchestrator.is_current(result.generation - 1)


class TestFloorJump:
    """Jumping both viewers to the nearest path sample."""

    @pytest.fixture
    def path(self):
        return [PathPoint(Point3(float(i), 0.0, 0.0), image_ref=f"{i}.jpg", yaw=0.1 * i) for i in range(10)]

    def test_jump_from_model(self, orchestrator, viewers, path):
        orchestrator.set_path(path)

        result = orchestrator.request_floor_jump((6.3, 0.2))

        assert result.index == 6
        assert result.path_point.image_ref == "6.jpg"
        pano_pose, animate_b, _ = viewers[SOURCE_B].last
        model_pose, animate_a, _ = viewers[SOURCE_A].last
        assert not animate_b
        assert not animate_a
        assert pano_pose.position == path[6].position
        assert model_pose == result.model_pose

    def test_jump_cancels_animation(self, orchestrator, path, clock):
        orchestrator.set_path(path)
        orchestrator.report_pose(SOURCE_B, pose_at(1.0))
        assert orchestrator.is_animating

        result = orchestrator.request_floor_jump((2.0, 0.0))

        assert not orchestrator.is_animating
        assert orchestrator.state.phase is SyncPhase.IDLE
        assert result.generation == 2
        assert orchestrator.state.generation == 2

    def test_jump_suppresses_both_viewers(self, orchestrator, path, clock):
        orchestrator.set_path(path)
        orchestrator.request_floor_jump((2.0, 0.0))
        clock.advance(0.01)

        assert orchestrator.report_pose(SOURCE_A, pose_at(9.0)).outcome is SyncOutcome.SUPPRESSED_WINDOW
        assert orchestrator.report_pose(SOURCE_B, pose_at(9.0)).outcome is SyncOutcome.SUPPRESSED_WINDOW

    def test_jump_uses_path_yaw_without_known_orientation(self, orchestrator, path):
        orchestrator.set_path(path)
        result = orchestrator.request_floor_jump((4.0, 0.0))

        assert result.pano_pose.orientation != Quaternion.identity()

    def test_jump_keeps_known_orientation(self, orchestrator, path, clock):
        orchestrator.set_path(path)
        q = Quaternion.from_array([0.0, 0.38, 0.0, 0.92])
        orchestrator.report_pose(SOURCE_B, pose_at(0.0, q=q))
        clock.advance(1.0)

        result = orchestrator.request_floor_jump((4.0, 0.0))

        assert result.pano_pose.orientation == q

    def test_jump_from_pano(self, orchestrator, path):
        orchestrator.set_path(path)
        result = orchestrator.request_floor_jump(Point3(8.9, 0.0, 0.0), source=SOURCE_B)

        assert result.index == 9
        assert orchestrator.state.authority is SOURCE_B

    def test_jump_without_path(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.request_floor_jump((1.0, 1.0))

    def test_jump_counted(self, orchestrator, path):
        orchestrator.set_path(path)
        orchestrator.request_floor_jump((1.0, 0.0))
        assert orchestrator.stats.jumps == 1
        assert orchestrator.stats.frames_applied == 2
