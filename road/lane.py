"""
Lane model: mapping between lateral offset d, lane index and lane center.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List

from trajectory.utils import mph2mps


class OffRoad(ValueError):
    """Lateral offset outside the drivable road."""

    def __init__(self, d: float, side: str):
        super().__init__(f"d={d:.2f} is beyond the {side} edge of the road")
        self.d = d
        self.side = side  # "left" or "right"


@dataclass
class LaneConfig:
    """Configuration of the lanes on the road."""

    # Lanes are numbered 0, 1, 2, ... from left to right
    lane_count: int = 3
    lane_width: float = 4.0  # m
    speed_limit: float = mph2mps(50.0)  # m/s
    speed_margin: float = 0.2  # m/s kept below the limit
    edge_lane_bias: float = 0.0  # m pushed away from the road edge on edge lanes


def build_lane_config(lane_cfg: dict) -> LaneConfig:
    """Build a LaneConfig from the ``lane`` config section."""
    if "speed_limit_mph" in lane_cfg:
        speed_limit = mph2mps(float(lane_cfg["speed_limit_mph"]))
    else:
        speed_limit = float(lane_cfg.get("speed_limit", mph2mps(50.0)))
    return LaneConfig(
        lane_count=int(lane_cfg.get("lane_count", 3)),
        lane_width=float(lane_cfg.get("lane_width", 4.0)),
        speed_limit=speed_limit,
        speed_margin=float(lane_cfg.get("speed_margin", 0.2)),
        edge_lane_bias=float(lane_cfg.get("edge_lane_bias", 0.0)),
    )


class Lane:
    """Stateless lane geometry."""

    def __init__(self, config: LaneConfig) -> None:
        if config.lane_count < 1:
            raise ValueError(f"lane_count must be positive, got {config.lane_count}")
        if config.lane_width <= 0.0:
            raise ValueError(f"lane_width must be positive, got {config.lane_width}")
        self.config = config

    @property
    def lane_count(self) -> int:
        return self.config.lane_count

    @property
    def lane_width(self) -> float:
        return self.config.lane_width

    @property
    def road_width(self) -> float:
        return self.config.lane_width * self.config.lane_count

    @property
    def speed_limit(self) -> float:
        return self.config.speed_limit

    @property
    def speed_limit_margin(self) -> float:
        """Speed limit with the safety margin applied."""
        return max(0.0, self.config.speed_limit - self.config.speed_margin)

    def lanes(self) -> List[int]:
        return list(range(self.config.lane_count))

    def is_valid_lane(self, lane: int) -> bool:
        return 0 <= lane < self.config.lane_count

    def clamp_lane(self, lane: int) -> int:
        return max(0, min(self.config.lane_count - 1, int(lane)))

    def lane_center(self, lane: int) -> float:
        """Lane center measured from the road center line."""
        return (0.5 + lane) * self.config.lane_width

    def safe_lane_center(self, lane: int) -> float:
        """Lane center with a bias away from the road edge on the edge lanes."""
        center = self.lane_center(lane)
        if self.config.lane_count == 1:
            return center
        if lane == 0:
            center += self.config.edge_lane_bias
        elif lane == self.config.lane_count - 1:
            center -= self.config.edge_lane_bias
        return center

    def lane_at(self, d: float) -> int:
        """Lane containing d. Raises OffRoad when d is not on the road."""
        if math.isnan(d):
            raise OffRoad(d, "unknown")
        if d < 0.0:
            raise OffRoad(d, "left")
        if d > self.road_width:
            raise OffRoad(d, "right")
        # The outer edge belongs to the last lane
        return min(int(math.floor(d / self.config.lane_width)), self.config.lane_count - 1)

    def nearest_lane(self, d: float) -> int:
        """Lane containing d, clamped to the road when d is off-road."""
        try:
            return self.lane_at(d)
        except OffRoad as exc:
            if exc.side == "right":
                return self.config.lane_count - 1
            return 0

    def distance_to_lane(self, d: float, lane: int) -> float:
        """Lateral distance from d to the center of lane."""
        return self.lane_center(lane) - d
