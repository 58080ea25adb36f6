"""Tests for path conditioning."""

import math

import numpy as np
import pytest

from posesync.config import EngineConfig
from posesync.dataset import generate_synthetic_path
from posesync.errors import NonFiniteValue, ValidationError
from posesync.models import PathPoint, Point3
from posesync.path_conditioner import (
    PathConditioner,
    compute_yaws,
    enforce_min_separation,
    kalman_filter,
    manhattan_path,
    nearest_path_index,
    path_stats,
    savitzky_golay,
)


def consecutive_gaps(positions):
    return np.linalg.norm(np.diff(np.asarray(positions), axis=0), axis=1)


def l_shaped_path(n=20, step=0.5, noise=0.01, seed=1):
    rng = np.random.default_rng(seed)
    leg1 = [(i * step, 1.6, 0.0) for i in range(n)]
    leg2 = [((n - 1) * step, 1.6, (i + 1) * step) for i in range(n)]
    return np.array(leg1 + leg2) + rng.normal(0, noise, size=(2 * n, 3))


class TestSavitzkyGolay:
    """Least-squares polynomial smoothing."""

    def test_constant_unchanged(self):
        positions = np.tile([1.0, 2.0, 3.0], (20, 1))
        smoothed, warning = savitzky_golay(positions, 11, 3)

        assert warning is None
        np.testing.assert_allclose(smoothed, positions)

    def test_cubic_preserved_in_interior(self):
        """An order-3 kernel reproduces a cubic away from the clamped edges."""
        t = np.arange(30, dtype=float)
        positions = np.stack([t, 0.01 * t ** 3, -0.5 * t ** 2 + t], axis=1)

        smoothed, _ = savitzky_golay(positions, 11, 3)

        np.testing.assert_allclose(smoothed[5:-5], positions[5:-5], atol=1e-6)

    def test_reduces_noise(self):
        rng = np.random.default_rng(0)
        clean = np.zeros((200, 3))
        noisy = clean + rng.normal(0, 0.1, size=clean.shape)

        smoothed, _ = savitzky_golay(noisy, 11, 3)

        assert np.std(smoothed) < np.std(noisy)

    def test_length_preserved_short_input(self):
        positions = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
        smoothed, _ = savitzky_golay(positions, 11, 3)
        assert smoothed.shape == positions.shape

    def test_singular_design_returns_input(self):
        """Order >= window has no unique fit; input comes back with a warning."""
        positions = np.random.default_rng(1).normal(size=(10, 3))

        smoothed, warning = savitzky_golay(positions, 3, 5)

        assert warning is not None
        assert "singular" in warning
        np.testing.assert_array_equal(smoothed, positions)


class TestKalman:
    """Per-axis constant-velocity filter."""

    def test_first_sample_initializes(self):
        positions = np.array([[3.0, 1.0, -2.0], [3.1, 1.0, -2.0]])
        filtered = kalman_filter(positions)
        np.testing.assert_array_equal(filtered[0], positions[0])

    def test_constant_unchanged(self):
        positions = np.tile([1.0, 1.6, -4.0], (50, 1))
        np.testing.assert_allclose(kalman_filter(positions), positions)

    def test_tracks_ramp(self):
        t = np.arange(200, dtype=float)
        positions = np.stack([t, np.zeros_like(t), 0.5 * t], axis=1)

        filtered = kalman_filter(positions, 1e-3, 1e-2)

        np.testing.assert_allclose(filtered[-1], positions[-1], atol=0.05)

    def test_reduces_noise(self):
        rng = np.random.default_rng(5)
        noisy = rng.normal(0, 0.1, size=(300, 3))

        filtered = kalman_filter(noisy, 1e-3, 1e-2)

        assert np.std(filtered[50:]) < np.std(noisy[50:])


class TestMinSeparation:
    """Consecutive samples pushed apart."""

    def test_straddle_midpoint(self):
        positions = np.array([[0.0, 0.0, 0.0], [0.02, 0.0, 0.0], [1.0, 0.0, 0.0]])

        fixed, repairs = enforce_min_separation(positions, 0.05)

        assert repairs == 1
        assert fixed[0, 0] == pytest.approx(-0.015)
        assert fixed[1, 0] == pytest.approx(0.035)
        np.testing.assert_array_equal(fixed[2], positions[2])

    def test_keeps_earlier_gap(self):
        """When moving the earlier point would break its own gap, only the later one moves."""
        positions = np.array([[0.0, 0.0, 0.0], [0.05, 0.0, 0.0], [0.06, 0.0, 0.0]])

        fixed, repairs = enforce_min_separation(positions, 0.05)

        assert repairs == 1
        np.testing.assert_array_equal(fixed[1], positions[1])
        assert fixed[2, 0] == pytest.approx(0.1)
        assert consecutive_gaps(fixed).min() >= 0.05

    def test_coincident_points(self):
        positions = np.tile([1.0, 1.6, 1.0], (25, 1))

        fixed, repairs = enforce_min_separation(positions, 0.05, np.random.default_rng(0))

        assert len(fixed) == 25
        assert repairs == 24
        assert consecutive_gaps(fixed).min() >= 0.05

    def test_seeded_repair_is_deterministic(self):
        positions = np.tile([0.0, 0.0, 0.0], (10, 1))

        first, _ = enforce_min_separation(positions, 0.05, np.random.default_rng(42))
        second, _ = enforce_min_separation(positions, 0.05, np.random.default_rng(42))

        np.testing.assert_array_equal(first, second)

    def test_short_input(self):
        fixed, repairs = enforce_min_separation(np.array([[1.0, 2.0, 3.0]]), 0.05)
        assert repairs == 0
        assert fixed.shape == (1, 3)


class TestManhattan:
    """Axis-snapped reconstruction."""

    def test_steps_axis_aligned(self):
        raw = l_shaped_path()

        snapped = manhattan_path(raw, lookahead=5, hysteresis=2)
        steps = np.diff(snapped, axis=0)

        for dx, _, dz in steps:
            assert min(abs(dx), abs(dz)) < 1e-9

    def test_constant_height(self):
        raw = l_shaped_path()
        snapped = manhattan_path(raw)

        np.testing.assert_allclose(snapped[:, 1], raw[:, 1].mean())

    def test_explicit_height(self):
        snapped = manhattan_path(l_shaped_path(), height=0.0)
        np.testing.assert_array_equal(snapped[:, 1], 0.0)

    def test_step_lengths_kept(self):
        raw = l_shaped_path()
        snapped = manhattan_path(raw)

        raw_steps = np.hypot(np.diff(raw[:, 0]), np.diff(raw[:, 2]))
        out_steps = np.hypot(np.diff(snapped[:, 0]), np.diff(snapped[:, 2]))

        np.testing.assert_allclose(out_steps, raw_steps)

    def test_turns_once(self):
        """The L-shaped walk keeps both legs and turns onto +z."""
        snapped = manhattan_path(l_shaped_path())

        assert snapped[-1, 2] - snapped[0, 2] > 5.0
        assert snapped[-1, 0] - snapped[0, 0] > 5.0

    @staticmethod
    def jittered_walk():
        """Straight +x walk with sample 5 knocked 1.2 m off to +z."""
        raw = np.array([[float(i), 1.6, 0.0] for i in range(10)])
        raw[5, 2] = 1.2
        return raw

    @staticmethod
    def corner_walk():
        """Five 1 m steps along +x, then five along +z."""
        return np.array([[float(min(i, 5)), 1.6, float(max(0, i - 5))] for i in range(11)])

    def test_hysteresis_holds_heading_through_jitter(self):
        steps = np.diff(manhattan_path(self.jittered_walk(), lookahead=1, hysteresis=3), axis=0)

        np.testing.assert_allclose(steps[:, 2], 0.0, atol=1e-9)
        assert np.all(steps[:, 0] > 0)

    def test_no_hysteresis_follows_jitter(self):
        steps = np.diff(manhattan_path(self.jittered_walk(), lookahead=1, hysteresis=1), axis=0)

        # The jittered step is snapped onto +z
        assert steps[4, 2] > 1.0
        assert abs(steps[4, 0]) < 1e-9

    def test_lookahead_turns_early(self):
        raw = self.corner_walk()

        local = np.diff(manhattan_path(raw, lookahead=1, hysteresis=1), axis=0)
        ahead = np.diff(manhattan_path(raw, lookahead=5, hysteresis=1), axis=0)

        # Fourth step: local heading still +x, the look-ahead window already sees the turn
        assert local[3, 0] == pytest.approx(1.0)
        assert local[3, 2] == pytest.approx(0.0, abs=1e-9)
        assert ahead[3, 2] == pytest.approx(1.0)
        assert ahead[3, 0] == pytest.approx(0.0, abs=1e-9)


class TestPathConditioner:
    """End-to-end conditioning."""

    def test_length_preserved(self):
        raw = generate_synthetic_path(steps=120, seed=3)
        result = PathConditioner().condition(raw)

        assert len(result.points) == len(raw)
        assert result.stats["point_count"] == len(raw)

    def test_min_separation_invariant(self):
        raw = generate_synthetic_path(steps=120, seed=3)
        # Dense duplicates on top of the walk
        raw = raw[:40] + [raw[40]] * 15 + raw[40:]
        config = EngineConfig(min_separation=0.05)

        result = PathConditioner(config).condition(raw)

        assert len(result.points) == len(raw)
        assert consecutive_gaps(result.positions()).min() >= config.min_separation

    def test_manhattan_mode_invariant(self):
        raw = [Point3.from_array(p) for p in l_shaped_path()]
        config = EngineConfig(manhattan=True, min_separation=0.2)

        result = PathConditioner(config).condition(raw)

        assert len(result.points) == len(raw)
        assert consecutive_gaps(result.positions()).min() >= 0.2

    def test_image_refs_preserved(self):
        raw = generate_synthetic_path(steps=30, seed=1)
        refs = [f"frame_{i:04d}.jpg" for i in range(30)]

        result = PathConditioner().condition(raw, refs)

        assert [p.image_ref for p in result.points] == refs

    def test_image_ref_count_mismatch(self):
        raw = generate_synthetic_path(steps=10)
        with pytest.raises(ValidationError):
            PathConditioner().condition(raw, ["a.jpg"])

    def test_array_input(self):
        result = PathConditioner().condition(l_shaped_path())
        assert isinstance(result.points[0], PathPoint)

    def test_non_finite_rejected(self):
        raw = l_shaped_path()
        raw[3, 1] = np.nan

        with pytest.raises(NonFiniteValue):
            PathConditioner().condition(raw)

    def test_empty(self):
        result = PathConditioner().condition([])
        assert result.points == []

    def test_singular_smoothing_warning(self):
        config = EngineConfig(smoothing_window=3, smoothing_order=4)
        result = PathConditioner(config).condition(l_shaped_path())

        assert len(result.warnings) == 1


class TestHelpers:
    def test_yaw_follows_next_point(self):
        positions = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 0.0, 1.0]])

        yaws = compute_yaws(positions)

        assert yaws[0] == pytest.approx(0.0)
        assert yaws[1] == pytest.approx(math.pi / 2)
        assert yaws[2] == yaws[1]

    def test_nearest_path_index(self):
        points = [PathPoint(Point3(float(i), 0.0, 0.0)) for i in range(10)]

        assert nearest_path_index(points, Point3(6.2, 1.0, 0.0)) == 6
        assert nearest_path_index(points, Point3(-5.0, 0.0, 0.0)) == 0

    def test_nearest_on_empty_path(self):
        with pytest.raises(ValidationError):
            nearest_path_index([], Point3(0.0, 0.0, 0.0))

    def test_path_stats(self):
        stats = path_stats(np.array([[0.0, 0.0, 0.0], [3.0, 4.0, 0.0], [3.0, 4.0, 1.0]]))

        assert stats["point_count"] == 3
        assert stats["total_length"] == pytest.approx(6.0)
        assert stats["min_separation"] == pytest.approx(1.0)
