"""
Speed governor: caps the behavior target speed for collision avoidance and
rate-limits the commanded speed.

Architecture:
  1. Car following: match the leader when it is inside the front buffer
  2. Emergency: drop below the leader inside the emergency buffer and raise
     the collision warning
  3. Speed control: bounded change of the commanded speed per cycle, with a
     larger deceleration allowed under the collision warning
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from behavior.traffic import LaneInfo, TrafficConfig


@dataclass
class SpeedGovernorConfig:
    """Configuration for the speed governor."""

    accel_limit: float = 0.1  # m/s per cycle
    decel_limit: float = 0.1  # m/s per cycle
    emergency_decel_limit: float = 0.2  # m/s per cycle under collision warning
    emergency_speed_margin: float = 0.2  # m/s below the leader in an emergency


@dataclass
class SpeedGovernorOutput:
    """Output from the speed governor."""

    target_speed: float  # commanded speed after rate limiting
    requested_speed: float  # behavior target before any cap
    follow_speed: Optional[float]  # cap from the leader, if any
    collision_warning: bool
    front_gap: float
    active_limiter: str  # "none", "follow", "emergency", "accel", "decel", "emergency_decel", "speed_limit"


class SpeedGovernor:
    """Car following and per-cycle speed rate limiting."""

    def __init__(self, config: SpeedGovernorConfig, traffic_config: TrafficConfig) -> None:
        self.config = config
        self.traffic_config = traffic_config

    def avoid_collision(self, target_speed: float, lane_info: LaneInfo) -> tuple[float, Optional[float], bool]:
        """Cap the target speed from the target lane's leader.

        Returns: (capped_speed, follow_speed, collision_warning)
        """
        if lane_info.front_gap >= self.traffic_config.front_buffer:
            return target_speed, None, False

        if lane_info.front_gap < self.traffic_config.emergency_front_buffer:
            follow_speed = max(0.0, lane_info.front_speed - self.config.emergency_speed_margin)
            return max(0.0, min(target_speed, follow_speed)), follow_speed, True

        follow_speed = max(0.0, lane_info.front_speed)
        return max(0.0, min(target_speed, follow_speed)), follow_speed, False

    def rate_limit(self, target_speed: float, current_speed: float, collision_warning: bool) -> tuple[float, str]:
        """Move from current_speed toward target_speed by at most one cycle's limit."""
        limiter = "none"
        if target_speed < current_speed:
            max_decel = self.config.emergency_decel_limit if collision_warning else self.config.decel_limit
            if target_speed < current_speed - max_decel:
                limiter = "emergency_decel" if collision_warning else "decel"
            speed = max(target_speed, current_speed - max_decel)
        elif target_speed > current_speed:
            if target_speed > current_speed + self.config.accel_limit:
                limiter = "accel"
            speed = min(target_speed, current_speed + self.config.accel_limit)
        else:
            speed = current_speed
        # Avoid negative zero
        return max(speed, 0.0), limiter

    def compute_target_speed(
        self,
        requested_speed: float,
        current_speed: float,
        lane_info: LaneInfo,
        speed_limit: Optional[float] = None,
    ) -> SpeedGovernorOutput:
        """Compute the commanded speed for this cycle.

        Args:
            requested_speed: Target speed from the behavior planner.
            current_speed: Speed at the reference point (m/s).
            lane_info: Occupancy of the target lane.
            speed_limit: Upper bound on the commanded speed, if any.

        Returns:
            SpeedGovernorOutput with the commanded speed and diagnostics.
        """
        if not math.isfinite(current_speed) or current_speed < 0.0:
            current_speed = 0.0
        if not math.isfinite(requested_speed):
            requested_speed = 0.0

        target, follow_speed, warning = self.avoid_collision(requested_speed, lane_info)

        active_limiter = "none"
        if follow_speed is not None and target < requested_speed:
            active_limiter = "emergency" if warning else "follow"

        speed, rate_limiter = self.rate_limit(target, current_speed, warning)
        if rate_limiter != "none":
            active_limiter = rate_limiter

        # Arriving above the limit must not carry over into the command
        if speed_limit is not None and speed > speed_limit:
            speed = max(0.0, speed_limit)
            active_limiter = "speed_limit"

        return SpeedGovernorOutput(
            target_speed=speed,
            requested_speed=requested_speed,
            follow_speed=follow_speed,
            collision_warning=warning,
            front_gap=lane_info.front_gap,
            active_limiter=active_limiter,
        )


def build_speed_governor(speed_cfg: dict, traffic_config: TrafficConfig) -> SpeedGovernor:
    """Build a SpeedGovernor from the ``speed`` config section."""
    gov_config = SpeedGovernorConfig(
        accel_limit=float(speed_cfg.get("accel_limit", 0.1)),
        decel_limit=float(
            speed_cfg.get("decel_limit", speed_cfg.get("accel_limit", 0.1))
        ),
        emergency_decel_limit=float(speed_cfg.get("emergency_decel_limit", 0.2)),
        emergency_speed_margin=float(speed_cfg.get("emergency_speed_margin", 0.2)),
    )
    return SpeedGovernor(gov_config, traffic_config)
