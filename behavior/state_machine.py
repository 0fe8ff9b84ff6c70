"""
Behavior planning state machine.

Picks the target lane and target speed once per cycle from the traffic model.
States:
  START                -> KEEP_LANE on the first cycle
  KEEP_LANE            -> PREPARE_LANE_CHANGE when stuck behind a slower car
  PREPARE_LANE_CHANGE  -> LANE_CHANGE when the adjacent lane is feasible,
                          KEEP_LANE when the best lane changed
  LANE_CHANGE          -> KEEP_LANE / PREPARE_LANE_CHANGE once the lane is reached
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from functools import cmp_to_key
from typing import Callable, Dict, List, Optional

from behavior.events import (
    LANE_CHANGE_ABORT,
    NEW_LAP,
    STATE_TRANSITION,
    EventSink,
    PlannerEvent,
    log_event,
)
from behavior.traffic import LaneInfo, TrafficConfig, TrafficModel
from data.formats.data_format import ReferencePoint
from road.lane import Lane
from trajectory.utils import clamp

logger = logging.getLogger(__name__)


class BehaviorState(Enum):
    START = 0
    KEEP_LANE = 1
    PREPARE_LANE_CHANGE = 2
    LANE_CHANGE = 3


@dataclass
class BehaviorConfig:
    """Configuration for the behavior state machine."""

    keep_lane_min_distance: float = 100.0  # m held in KEEP_LANE before changing
    prepare_min_distance: float = 5.0  # m held in PREPARE_LANE_CHANGE
    lane_change_min_distance: float = 50.0  # m held in LANE_CHANGE
    lane_change_cte_tolerance: float = 0.3  # m
    lane_change_accel: float = 0.1  # m/s per cycle while changing lanes
    velocity_tolerance: float = 0.5  # m/s, lane velocities closer than this tie
    initial_lane: int = 1


def build_behavior_config(behavior_cfg: dict) -> BehaviorConfig:
    """Build a BehaviorConfig from the ``behavior`` config section."""
    return BehaviorConfig(
        keep_lane_min_distance=float(behavior_cfg.get("keep_lane_min_distance", 100.0)),
        prepare_min_distance=float(behavior_cfg.get("prepare_min_distance", 5.0)),
        lane_change_min_distance=float(behavior_cfg.get("lane_change_min_distance", 50.0)),
        lane_change_cte_tolerance=float(behavior_cfg.get("lane_change_cte_tolerance", 0.3)),
        lane_change_accel=float(behavior_cfg.get("lane_change_accel", 0.1)),
        velocity_tolerance=float(behavior_cfg.get("velocity_tolerance", 0.5)),
        initial_lane=int(behavior_cfg.get("initial_lane", 1)),
    )


@dataclass
class PlannerState:
    """Planner state carried from one cycle to the next."""

    state: BehaviorState = BehaviorState.START
    state_s: float = 0.0  # s where the current state began
    target_lane: int = 1
    target_speed: float = 0.0
    changing_lane: Optional[int] = None  # final lane of a lane change in progress
    collision_warning: bool = False
    # Lap tracking
    laps: int = 0
    lap_tick: int = 0
    passed_zero_s: bool = False
    lap_start_s: float = 0.0
    lap_start_d: float = 0.0


@dataclass
class Decision:
    """Outcome of one state handler."""

    next_state: BehaviorState
    target_lane: int
    target_speed: float
    changing_lane: Optional[int]
    aborted: bool = False


@dataclass
class BehaviorPlan:
    """Target lane and speed proposed for this cycle."""

    state: BehaviorState
    target_lane: int
    target_speed: float
    best_lane: int
    changing_lane: Optional[int]
    meters_in_state: float
    events: List[PlannerEvent] = field(default_factory=list)


@dataclass
class _Cycle:
    ref: ReferencePoint
    ego_speed: float
    traffic: TrafficModel
    best_lane: int
    meters_in_state: float
    speed_limit: float


class BehaviorStateMachine:
    """Owns the planner state and runs one transition per cycle."""

    def __init__(
        self,
        lane: Lane,
        traffic_config: TrafficConfig,
        config: Optional[BehaviorConfig] = None,
        distance_fn: Optional[Callable[[float, float], float]] = None,
        event_sink: Optional[EventSink] = None,
    ) -> None:
        self.lane = lane
        self.traffic_config = traffic_config
        self.config = config or BehaviorConfig()
        # Forward distance travelled from one s to another
        self.distance_fn = distance_fn or (lambda s_from, s_to: s_to - s_from)
        self.event_sink = event_sink or log_event
        self._handlers: Dict[BehaviorState, Callable[[_Cycle], Decision]] = {
            BehaviorState.KEEP_LANE: self._keep_lane,
            BehaviorState.PREPARE_LANE_CHANGE: self._prepare_lane_change,
            BehaviorState.LANE_CHANGE: self._lane_change,
        }
        self.state = PlannerState()
        self.reset()

    def reset(self) -> None:
        """Return to the initial state."""
        self.state = PlannerState(target_lane=self.lane.clamp_lane(self.config.initial_lane))

    def _emit(self, kind: str, s: float, events: List[PlannerEvent], **data) -> None:
        event = PlannerEvent(kind=kind, s=s, data=data)
        events.append(event)
        self.event_sink(event)

    # --- lap tracking ---

    def track_lap(self, ego_s: float, ego_d: float) -> int:
        """Count laps from the ego position. Returns the current lap (1-based)."""
        st = self.state
        if st.lap_tick == 0:
            st.lap_start_s = ego_s
            st.lap_start_d = ego_d
        # Crossing s=0 puts the ego behind its start position
        if ego_s < st.lap_start_s:
            st.passed_zero_s = True
        if st.passed_zero_s and ego_s > st.lap_start_s:
            st.laps += 1
            st.lap_tick = 0
            st.passed_zero_s = False
            self._emit(NEW_LAP, ego_s, [], lap=st.laps + 1)
        st.lap_tick += 1
        return st.laps + 1

    # --- lane ranking ---

    def _lane_velocity(self, info: LaneInfo) -> float:
        """Speed a car could keep in a lane."""
        if info.front_gap >= self.traffic_config.lane_horizon:
            return math.inf
        # A close car behind would have to be matched
        if info.back_gap > self.traffic_config.back_buffer:
            return info.back_speed
        return info.front_speed

    def best_lane(self, traffic: TrafficModel, ref_lane: int) -> int:
        """Rank the lanes and return the best one."""
        target_lane = self.state.target_lane
        if self.lane.is_valid_lane(target_lane) and traffic[target_lane].is_clear():
            return target_lane

        tolerance = self.config.velocity_tolerance

        def compare(i: int, j: int) -> int:
            lane_i = traffic[i]
            lane_j = traffic[j]

            if lane_i.is_clear():
                if not lane_j.is_clear():
                    return -1
                # Both clear: the one closest to the reference lane
                return abs(i - ref_lane) - abs(j - ref_lane)
            if lane_j.is_clear():
                return 1

            v_i = self._lane_velocity(lane_i)
            v_j = self._lane_velocity(lane_j)
            same_speed = (math.isinf(v_i) and math.isinf(v_j) and v_i == v_j) or abs(v_i - v_j) < tolerance
            if same_speed:
                # Larger front gap first
                if lane_i.front_gap == lane_j.front_gap:
                    return 0
                return -1 if lane_i.front_gap > lane_j.front_gap else 1
            return -1 if v_i > v_j else 1

        lanes = sorted(self.lane.lanes(), key=cmp_to_key(compare))
        return lanes[0]

    # --- state handlers ---

    def _keep_lane(self, cycle: _Cycle) -> Decision:
        st = self.state
        decision = Decision(
            next_state=BehaviorState.KEEP_LANE,
            target_lane=st.target_lane,
            target_speed=cycle.speed_limit,
            changing_lane=None,
        )

        current = cycle.traffic[st.target_lane]
        stuck_behind = (
            current.front_gap < self.traffic_config.front_buffer
            and current.front_speed < cycle.ego_speed
            and cycle.meters_in_state > self.config.keep_lane_min_distance
        )
        if stuck_behind:
            best = cycle.traffic[cycle.best_lane]
            # Compare against the lane we are actually in
            if best.front_speed > current.front_speed:
                decision.changing_lane = cycle.best_lane
                decision.next_state = BehaviorState.PREPARE_LANE_CHANGE
        return decision

    def _prepare_lane_change(self, cycle: _Cycle) -> Decision:
        st = self.state
        ref_lane = cycle.ref.lane
        changing_lane = st.changing_lane

        if changing_lane is None or changing_lane == ref_lane:
            return Decision(BehaviorState.KEEP_LANE, ref_lane, st.target_speed, None)

        working_lane = self.lane.clamp_lane(ref_lane + (1 if changing_lane > ref_lane else -1))

        if cycle.traffic[working_lane].feasible and cycle.meters_in_state > self.config.prepare_min_distance:
            return Decision(BehaviorState.LANE_CHANGE, working_lane, st.target_speed, changing_lane)

        if changing_lane != cycle.best_lane:
            return Decision(BehaviorState.KEEP_LANE, ref_lane, st.target_speed, None)

        # Wait for a gap in the reference lane rather than drifting toward the
        # working lane, matching the leader if it is close
        target_speed = st.target_speed
        current = cycle.traffic[ref_lane]
        if current.front_gap < self.traffic_config.front_buffer:
            target_speed = min(target_speed, current.front_speed)
        return Decision(BehaviorState.PREPARE_LANE_CHANGE, ref_lane, target_speed, changing_lane)

    def _lane_change(self, cycle: _Cycle) -> Decision:
        st = self.state
        ref = cycle.ref
        decision = Decision(
            next_state=BehaviorState.LANE_CHANGE,
            target_lane=st.target_lane,
            target_speed=min(st.target_speed, ref.speed + self.config.lane_change_accel),
            changing_lane=st.changing_lane,
        )

        cte = ref.d - self.lane.lane_center(st.target_lane)
        completed = (
            ref.lane == st.target_lane
            and abs(cte) <= self.config.lane_change_cte_tolerance
            and cycle.meters_in_state > self.config.lane_change_min_distance
        )
        if completed:
            if st.changing_lane is not None and st.changing_lane != ref.lane:
                decision.next_state = BehaviorState.PREPARE_LANE_CHANGE
            else:
                decision.changing_lane = None
                decision.next_state = BehaviorState.KEEP_LANE

        if cycle.traffic[st.target_lane].front_gap < self.traffic_config.emergency_front_buffer:
            decision.aborted = st.target_lane != ref.lane or st.changing_lane is not None
            decision.target_lane = ref.lane
            decision.changing_lane = None
        return decision

    # --- main step ---

    def step(self, ref: ReferencePoint, ego_speed: float, traffic: TrafficModel) -> BehaviorPlan:
        """Run one transition and return the proposed target lane and speed."""
        st = self.state
        events: List[PlannerEvent] = []
        speed_limit = self.lane.speed_limit_margin

        if st.state == BehaviorState.START:
            st.changing_lane = None
            st.target_lane = ref.lane
            st.state = BehaviorState.KEEP_LANE
            st.state_s = st.lap_start_s
            self._emit(STATE_TRANSITION, ref.s, events,
                       previous=BehaviorState.START.name, state=st.state.name, lane=ref.lane)

        # Planner state may hold a lane from a wider configuration
        st.target_lane = self.lane.clamp_lane(st.target_lane)

        best_lane = self.best_lane(traffic, ref.lane)
        meters_in_state = self.distance_fn(st.state_s, ref.s)
        if not math.isfinite(meters_in_state):
            meters_in_state = 0.0

        cycle = _Cycle(
            ref=ref,
            ego_speed=ego_speed if math.isfinite(ego_speed) else 0.0,
            traffic=traffic,
            best_lane=best_lane,
            meters_in_state=meters_in_state,
            speed_limit=speed_limit,
        )
        logger.debug(
            "state=%s best=%d ref=%d target=%d in_state=%.1fm",
            st.state.name, best_lane, ref.lane, st.target_lane, meters_in_state,
        )

        decision = self._handlers[st.state](cycle)

        if decision.aborted:
            self._emit(LANE_CHANGE_ABORT, ref.s, events,
                       target_lane=st.target_lane, reverted_to=decision.target_lane,
                       front_gap=round(traffic[st.target_lane].front_gap, 2))

        if decision.next_state != st.state:
            self._emit(STATE_TRANSITION, ref.s, events,
                       previous=st.state.name, state=decision.next_state.name,
                       lane=decision.target_lane, changing_lane=decision.changing_lane)
            st.state = decision.next_state
            st.state_s = ref.s

        st.target_lane = self.lane.clamp_lane(decision.target_lane)
        st.changing_lane = decision.changing_lane
        st.target_speed = clamp(decision.target_speed, 0.0, speed_limit)

        return BehaviorPlan(
            state=st.state,
            target_lane=st.target_lane,
            target_speed=st.target_speed,
            best_lane=best_lane,
            changing_lane=st.changing_lane,
            meters_in_state=meters_in_state,
            events=events,
        )

    def commit(self, commanded_speed: float, collision_warning: bool) -> None:
        """Store the speed actually commanded this cycle."""
        self.state.target_speed = commanded_speed
        self.state.collision_warning = collision_warning
