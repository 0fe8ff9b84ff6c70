"""
Unit tests for control/speed_governor.py.

Tests the SpeedGovernor in isolation (no highway_stack.py dependency):
- Car following inside the front buffer
- Emergency braking and collision warning
- Per-cycle rate limiting
- Edge cases
- Active limiter attribution
"""

import math

import pytest

from behavior.traffic import LaneInfo, TrafficConfig
from control.speed_governor import (
    SpeedGovernor,
    SpeedGovernorConfig,
    SpeedGovernorOutput,
    build_speed_governor,
)


def _make_governor(**overrides) -> SpeedGovernor:
    """Helper to build a SpeedGovernor with common defaults."""
    gov_cfg = SpeedGovernorConfig(
        accel_limit=overrides.get("accel_limit", 0.1),
        decel_limit=overrides.get("decel_limit", 0.1),
        emergency_decel_limit=overrides.get("emergency_decel_limit", 0.2),
        emergency_speed_margin=0.2,
    )
    return SpeedGovernor(gov_cfg, TrafficConfig())


def _leader(gap: float, speed: float) -> LaneInfo:
    return LaneInfo(front_car=7, front_gap=gap, front_speed=speed, front_gap_next=gap)


# --- Car following ---

class TestCarFollowing:
    def test_clear_lane_keeps_target(self):
        gov = _make_governor()
        speed, follow, warning = gov.avoid_collision(22.0, LaneInfo())
        assert speed == 22.0
        assert follow is None
        assert not warning

    def test_leader_beyond_buffer_ignored(self):
        gov = _make_governor()
        speed, follow, warning = gov.avoid_collision(22.0, _leader(10.0, 15.0))
        assert speed == 22.0
        assert follow is None

    def test_leader_inside_buffer_is_matched(self):
        gov = _make_governor()
        speed, follow, warning = gov.avoid_collision(22.0, _leader(8.0, 15.0))
        assert speed == pytest.approx(15.0)
        assert follow == pytest.approx(15.0)
        assert not warning

    def test_faster_leader_does_not_raise_target(self):
        gov = _make_governor()
        speed, _, _ = gov.avoid_collision(12.0, _leader(8.0, 30.0))
        assert speed == pytest.approx(12.0)


# --- Emergency ---

class TestEmergency:
    def test_emergency_drops_below_leader(self):
        gov = _make_governor()
        speed, follow, warning = gov.avoid_collision(22.0, _leader(3.0, 15.0))
        assert warning
        assert speed == pytest.approx(14.8)
        assert follow == pytest.approx(14.8)

    def test_stopped_leader_gives_zero(self):
        gov = _make_governor()
        speed, _, warning = gov.avoid_collision(22.0, _leader(1.0, 0.0))
        assert warning
        assert speed == 0.0

    def test_emergency_uses_larger_decel(self):
        gov = _make_governor()
        out = gov.compute_target_speed(22.0, 20.0, _leader(3.0, 10.0))
        assert out.collision_warning
        assert out.target_speed == pytest.approx(19.8)
        assert out.active_limiter == "emergency_decel"

    def test_warning_clears_when_gap_opens(self):
        gov = _make_governor()
        assert gov.compute_target_speed(22.0, 20.0, _leader(3.0, 10.0)).collision_warning
        assert not gov.compute_target_speed(22.0, 20.0, _leader(30.0, 10.0)).collision_warning


# --- Rate limiting ---

class TestRateLimit:
    def test_accel_bounded(self):
        gov = _make_governor()
        out = gov.compute_target_speed(22.0, 0.0, LaneInfo())
        assert out.target_speed == pytest.approx(0.1)
        assert out.active_limiter == "accel"

    def test_decel_bounded(self):
        gov = _make_governor()
        out = gov.compute_target_speed(10.0, 20.0, LaneInfo())
        assert out.target_speed == pytest.approx(19.9)
        assert out.active_limiter == "decel"

    def test_small_step_reaches_target(self):
        gov = _make_governor()
        out = gov.compute_target_speed(20.05, 20.0, LaneInfo())
        assert out.target_speed == pytest.approx(20.05)
        assert out.active_limiter == "none"

    def test_separate_accel_and_decel_limits(self):
        gov = _make_governor(accel_limit=0.2, decel_limit=0.5)
        assert gov.rate_limit(30.0, 10.0, False) == (pytest.approx(10.2), "accel")
        assert gov.rate_limit(0.0, 10.0, False) == (pytest.approx(9.5), "decel")

    def test_change_never_exceeds_limit(self):
        gov = _make_governor()
        current = 0.0
        for requested in [22.0, 22.0, 0.0, 5.0, 22.0, 1.0]:
            for _ in range(20):
                out = gov.compute_target_speed(requested, current, LaneInfo())
                assert abs(out.target_speed - current) <= 0.1 + 1e-9
                current = out.target_speed

    def test_speed_limit_caps_command(self):
        gov = _make_governor()
        out = gov.compute_target_speed(22.152, 40.0, LaneInfo(), speed_limit=22.152)
        assert out.target_speed == pytest.approx(22.152)
        assert out.active_limiter == "speed_limit"

    def test_speed_limit_inactive_below_limit(self):
        gov = _make_governor()
        out = gov.compute_target_speed(22.0, 10.0, LaneInfo(), speed_limit=22.152)
        assert out.target_speed == pytest.approx(10.1)
        assert out.active_limiter == "accel"

    def test_never_negative(self):
        gov = _make_governor()
        out = gov.compute_target_speed(0.0, 0.05, _leader(1.0, 0.0))
        assert out.target_speed == 0.0


# --- Edge cases ---

class TestEdgeCases:
    def test_nan_current_speed(self):
        gov = _make_governor()
        out = gov.compute_target_speed(22.0, float("nan"), LaneInfo())
        assert out.target_speed == pytest.approx(0.1)

    def test_nan_requested_speed(self):
        gov = _make_governor()
        out = gov.compute_target_speed(float("nan"), 10.0, LaneInfo())
        assert math.isfinite(out.target_speed)
        assert out.target_speed == pytest.approx(9.9)

    def test_output_type(self):
        gov = _make_governor()
        out = gov.compute_target_speed(22.0, 10.0, _leader(8.0, 9.0))
        assert isinstance(out, SpeedGovernorOutput)
        assert out.requested_speed == 22.0
        assert out.front_gap == 8.0


# --- Limiter attribution ---

class TestActiveLimiter:
    def test_follow_limiter(self):
        gov = _make_governor()
        out = gov.compute_target_speed(22.0, 15.0, _leader(8.0, 15.0))
        assert out.active_limiter == "follow"
        assert out.target_speed == pytest.approx(15.0)

    def test_emergency_limiter(self):
        gov = _make_governor()
        out = gov.compute_target_speed(22.0, 14.8, _leader(3.0, 15.0))
        assert out.active_limiter == "emergency"

    def test_rate_limiter_overrides(self):
        gov = _make_governor()
        out = gov.compute_target_speed(22.0, 5.0, _leader(8.0, 15.0))
        assert out.active_limiter == "accel"


def test_build_speed_governor_from_config():
    gov = build_speed_governor({"accel_limit": 0.3}, TrafficConfig())
    assert gov.config.accel_limit == 0.3
    # decel defaults to the accel limit
    assert gov.config.decel_limit == 0.3
    assert gov.config.emergency_decel_limit == 0.2

    gov = build_speed_governor({"accel_limit": 0.3, "decel_limit": 0.4}, TrafficConfig())
    assert gov.config.decel_limit == 0.4
