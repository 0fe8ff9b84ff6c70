"""
Per-cycle traffic model built from sensor fusion.

For every lane the nearest vehicle in front and behind the reference point is
kept together with its gap now and after the unconsumed previous path, and the
lane is flagged feasible when both gaps stay outside the lane-change buffers.
A TrafficModel is built fresh each cycle and never carried over.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Callable, Iterable, List, Optional

from data.formats.data_format import VehicleObservation
from road.lane import Lane, OffRoad

logger = logging.getLogger(__name__)


@dataclass
class TrafficConfig:
    """Gap thresholds used for lane occupancy."""

    lane_horizon: float = 50.0  # m, lookahead/lookback horizon
    front_buffer: float = 10.0  # m
    back_buffer: float = -10.0  # m, negative (behind)
    emergency_front_buffer: float = 5.0  # m


def build_traffic_config(behavior_cfg: dict) -> TrafficConfig:
    """Build a TrafficConfig from the ``behavior`` config section."""
    back_buffer = float(behavior_cfg.get("back_buffer", -10.0))
    return TrafficConfig(
        lane_horizon=float(behavior_cfg.get("lane_horizon", 50.0)),
        front_buffer=float(behavior_cfg.get("front_buffer", 10.0)),
        # Accept the buffer as a positive distance too
        back_buffer=-abs(back_buffer),
        emergency_front_buffer=float(behavior_cfg.get("emergency_front_buffer", 5.0)),
    )


@dataclass
class LaneInfo:
    """Occupancy of one lane relative to the reference point."""

    front_car: Optional[int] = None
    back_car: Optional[int] = None
    front_gap: float = math.inf
    front_speed: float = math.inf
    front_gap_next: float = math.inf
    back_gap: float = -math.inf
    back_speed: float = -math.inf
    back_gap_next: float = -math.inf
    feasible: bool = True

    def is_clear(self) -> bool:
        return self.feasible and self.front_car is None


class TrafficModel:
    """Lane occupancy for one planning cycle."""

    def __init__(self, lanes: List[LaneInfo], config: TrafficConfig) -> None:
        self.lanes = lanes
        self.config = config

    def __getitem__(self, lane: int) -> LaneInfo:
        return self.lanes[lane]

    def __len__(self) -> int:
        return len(self.lanes)

    def summary(self) -> List[dict]:
        return [asdict(info) for info in self.lanes]

    @classmethod
    def build(
        cls,
        ref_s: float,
        observations: Iterable[VehicleObservation],
        lane: Lane,
        config: TrafficConfig,
        planned_points: int,
        dt: float,
        gap_fn: Optional[Callable[[float, float], float]] = None,
    ) -> "TrafficModel":
        """
        Classify observations into lanes and keep the nearest cars.

        Args:
            ref_s: s of the reference point the new path starts from.
            observations: Sensor fusion vehicles.
            lane: Lane model.
            config: Gap thresholds.
            planned_points: Unconsumed points of the previous path.
            dt: Sample period of the path (s).
            gap_fn: Signed gap from ref_s to a car's s; plain difference when None.
        """
        if gap_fn is None:
            gap_fn = lambda s_from, s_to: s_to - s_from  # noqa: E731

        lanes = [LaneInfo() for _ in range(lane.lane_count)]
        horizon_time = max(0, int(planned_points)) * dt

        for car in observations:
            try:
                car_lane = lane.lane_at(car.d)
            except OffRoad as exc:
                logger.debug("Ignoring car %s: %s", car.id, exc)
                continue

            info = lanes[car_lane]

            # Constant speed prediction over the unconsumed previous path
            car_speed = math.hypot(car.vx, car.vy)
            car_gap = gap_fn(ref_s, car.s)
            car_gap_next = car_gap + car_speed * horizon_time
            if not math.isfinite(car_gap) or not math.isfinite(car_gap_next):
                logger.debug("Ignoring car %s: non-finite gap", car.id)
                continue

            logger.debug(
                "car %2d lane=%d v=%.1f gap=%.1f gap'=%.1f",
                car.id, car_lane, car_speed, car_gap, car_gap_next,
            )

            if car_gap > 0.0:
                if car_gap < info.front_gap:
                    info.front_car = car.id
                    info.front_gap = car_gap
                    info.front_speed = car_speed
                    info.front_gap_next = car_gap_next
            # Cars beyond the lookback horizon are ignored
            elif car_gap > max(info.back_gap, -config.lane_horizon):
                info.back_car = car.id
                info.back_gap = car_gap
                info.back_speed = car_speed
                info.back_gap_next = car_gap_next

        for info in lanes:
            info.feasible = (
                info.front_gap > config.front_buffer
                and info.front_gap_next > config.front_buffer
                and info.back_gap < config.back_buffer
                and info.back_gap_next < config.back_buffer
            )

        return cls(lanes, config)
