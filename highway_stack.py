"""
Main highway planner integration.
Connects road geometry, traffic model, behavior planning, speed control and
trajectory synthesis into one planning cycle.
"""

import logging
import math
import sys
from pathlib import Path as FilePath
from typing import Iterable, List, Optional

import yaml

from behavior.events import (
    COLLISION_WARNING_CLEARED,
    COLLISION_WARNING_RAISED,
    EventSink,
    PlannerEvent,
    log_event,
)
from behavior.state_machine import BehaviorStateMachine, build_behavior_config
from behavior.traffic import TrafficModel, build_traffic_config
from control.speed_governor import build_speed_governor
from data.formats.data_format import EgoState, PlanOutput, ReferencePoint, VehicleObservation
from road.lane import Lane, build_lane_config
from road.road_map import MapLoadError, RoadMap, build_road_map
from trajectory.synthesizer import TrajectorySynthesizer, build_trajectory_config
from trajectory.utils import distance, mps2mph

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = FilePath(__file__).parent / "config" / "planner_config.yaml"
DEFAULT_LOG_DIR = FilePath(__file__).parent / "tmp" / "logs"

# Below this the previous path tail has no usable heading
MIN_TAIL_LENGTH = 1e-6


def configure_logging(level: int = logging.INFO, log_dir: Optional[FilePath] = DEFAULT_LOG_DIR) -> None:
    """Log to stderr and, when log_dir is given, to highway_stack.log."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_dir is not None:
        log_dir = FilePath(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(log_dir / "highway_stack.log")))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    else:
        config_path = FilePath(config_path)

    if config_path.exists():
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
        return config
    else:
        logger.warning(f"Config file not found at {config_path}, using defaults")
        return {}


class HighwayStack:
    """
    Highway path planner.

    ``initialize`` loads the road map once; ``plan`` runs one cycle:
      1. reference point of the new path
      2. lap tracking
      3. traffic model from sensor fusion
      4. behavior plan (target lane and speed)
      5. collision avoidance and speed control
      6. trajectory synthesis
    """

    def __init__(self, config: Optional[dict] = None, event_sink: Optional[EventSink] = None):
        self.config = config if config is not None else {}
        self.event_sink = event_sink or log_event

        self.lane = Lane(build_lane_config(self.config.get('lane', {})))
        behavior_cfg = self.config.get('behavior', {})
        self.traffic_config = build_traffic_config(behavior_cfg)
        self.behavior_config = build_behavior_config(behavior_cfg)
        self.speed_governor = build_speed_governor(self.config.get('speed', {}), self.traffic_config)
        self.trajectory_config = build_trajectory_config(self.config.get('trajectory', {}))

        self.road_map: Optional[RoadMap] = None
        self.synthesizer: Optional[TrajectorySynthesizer] = None
        self.behavior = BehaviorStateMachine(
            self.lane,
            self.traffic_config,
            self.behavior_config,
            event_sink=self.event_sink,
        )
        self.cycle_count = 0

    @property
    def initialized(self) -> bool:
        return self.road_map is not None

    def initialize(self, waypoint_source=None) -> RoadMap:
        """Build the road map. Raises MapLoadError when no waypoints are usable."""
        road_map = build_road_map(self.config.get('road', {}), waypoint_source)
        self.attach_road_map(road_map)
        return road_map

    def attach_road_map(self, road_map: RoadMap) -> None:
        self.road_map = road_map
        self.synthesizer = TrajectorySynthesizer(road_map, self.trajectory_config)
        self.behavior.distance_fn = road_map.travelled

    def reset(self) -> None:
        """Forget all planner state (keeps the road map)."""
        self.behavior.reset()
        self.cycle_count = 0

    def get_reference(self, ego: EgoState, dt: float) -> ReferencePoint:
        """Pose the new path attaches to: end of the previous path or the ego."""
        previous = ego.previous_path
        planned_size = len(previous)

        ref_x = ref_y = ref_x_prev = ref_y_prev = None
        if planned_size >= 2:
            ref_x, ref_y = previous.last(1)
            ref_x_prev, ref_y_prev = previous.last(2)
            tail = distance(ref_x_prev, ref_y_prev, ref_x, ref_y)
            if not math.isfinite(tail) or tail < MIN_TAIL_LENGTH:
                logger.debug("Previous path tail is degenerate (%.3g m), using ego pose", tail)
                ref_x = None

        if ref_x is not None:
            ref_s = ego.end_path_s
            ref_d = ego.end_path_d
            ref_yaw = math.atan2(ref_y - ref_y_prev, ref_x - ref_x_prev)
            ref_v = tail / dt if dt > 0.0 else ego.speed
        else:
            # Heading from a synthetic point one meter behind the ego
            ref_x = ego.x
            ref_y = ego.y
            ref_s = ego.s
            ref_d = ego.d
            ref_yaw = ego.yaw
            ref_v = ego.speed
            ref_x_prev = ref_x - math.cos(ref_yaw)
            ref_y_prev = ref_y - math.sin(ref_yaw)

        ref_lane = self.lane.nearest_lane(ref_d)
        if not (0.0 <= ref_d <= self.lane.road_width):
            logger.warning("Reference d=%.2f is off-road, using lane %d", ref_d, ref_lane)

        return ReferencePoint(
            x=float(ref_x), y=float(ref_y),
            x_prev=float(ref_x_prev), y_prev=float(ref_y_prev),
            s=float(ref_s), d=float(ref_d),
            yaw=float(ref_yaw), speed=float(ref_v),
            lane=ref_lane,
            planned_points=planned_size,
        )

    def plan(
        self,
        ego: EgoState,
        observations: Iterable[VehicleObservation],
        dt: Optional[float] = None,
    ) -> PlanOutput:
        """Run one planning cycle and return the next path."""
        if self.road_map is None or self.synthesizer is None:
            raise RuntimeError("HighwayStack.plan called before initialize()")
        if dt is None or not dt > 0.0:
            dt = self.trajectory_config.dt
        self.cycle_count += 1

        # 1. Reference point
        ref = self.get_reference(ego, dt)
        # 2. Laps
        lap = self.behavior.track_lap(ego.s, ego.d)
        logger.debug(
            "LAP=%d LANE=%d (s=%.1f, d=%.1f) PLANNED %d points",
            lap, ref.lane, ego.s, ego.d, ref.planned_points,
        )

        # 3. Traffic model, rebuilt every cycle
        traffic = TrafficModel.build(
            ref.s,
            observations,
            self.lane,
            self.traffic_config,
            ref.planned_points,
            dt,
            gap_fn=self.road_map.signed_gap,
        )

        # 4. Behavior plan
        was_warning = self.behavior.state.collision_warning
        behavior_plan = self.behavior.step(ref, ego.speed, traffic)

        # 5. Collision avoidance and speed control
        governor = self.speed_governor.compute_target_speed(
            behavior_plan.target_speed,
            ref.speed,
            traffic[behavior_plan.target_lane],
            speed_limit=self.lane.speed_limit_margin,
        )
        self.behavior.commit(governor.target_speed, governor.collision_warning)
        if governor.collision_warning != was_warning:
            kind = COLLISION_WARNING_RAISED if governor.collision_warning else COLLISION_WARNING_CLEARED
            self.event_sink(PlannerEvent(kind=kind, s=ref.s, data={
                "lane": behavior_plan.target_lane,
                "front_gap": round(governor.front_gap, 2),
            }))

        # 6. Trajectory
        target_d = self.lane.safe_lane_center(behavior_plan.target_lane)
        path, degraded = self.synthesizer.synthesize(
            ref, ego.previous_path, target_d, governor.target_speed, dt=dt,
        )
        logger.debug(
            "target lane=%d speed=%.1f mph limiter=%s",
            behavior_plan.target_lane, mps2mph(governor.target_speed), governor.active_limiter,
        )

        return PlanOutput(
            path=path,
            state=behavior_plan.state.name,
            target_lane=behavior_plan.target_lane,
            target_speed=governor.target_speed,
            collision_warning=governor.collision_warning,
            lap=lap,
            best_lane=behavior_plan.best_lane,
            reference_lane=ref.lane,
            new_points=len(path) - len(ego.previous_path),
            degraded=degraded,
            lane_info=traffic.summary(),
        )


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Run the highway path planner')
    parser.add_argument('--map', type=str, default=None,
                        help='Waypoint file (default: road.map_file from the config)')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/planner_config.yaml)')
    parser.add_argument('--host', type=str, default=None,
                        help='Bind address for the simulator bridge')
    parser.add_argument('--port', type=int, default=None,
                        help='Port for the simulator bridge')
    parser.add_argument('--log-level', type=str, default='INFO',
                        help='Logging level (DEBUG, INFO, WARNING, ...)')

    args = parser.parse_args()

    configure_logging(getattr(logging, args.log_level.upper(), logging.INFO))
    config = load_config(args.config)

    stack = HighwayStack(config)
    try:
        stack.initialize(args.map)
    except MapLoadError as e:
        logger.error(f"Failed to load road map: {e}")
        sys.exit(1)

    # Imported here so the planner core does not need the web stack
    from bridge.server import run_server

    bridge_cfg = config.get('bridge', {})
    run_server(
        stack,
        host=args.host or bridge_cfg.get('host', '0.0.0.0'),
        port=args.port or int(bridge_cfg.get('port', 4567)),
    )


if __name__ == "__main__":
    main()
