"""
Telemetry schemas for the simulator bridge.

The simulator reports yaw in degrees and speeds in mph; the planner works in
radians and m/s, so conversion happens here before anything reaches the core.
"""

import json
import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel

from data.formats.data_format import EgoState, Path, PlanOutput, VehicleObservation
from trajectory.utils import deg2rad, mph2mps

logger = logging.getLogger(__name__)

SOCKET_EVENT_PREFIX = "42"
MANUAL_MESSAGE = '42["manual",{}]'


class Telemetry(BaseModel):
    """Telemetry message from the simulator."""
    # Main car's localization data
    x: float
    y: float
    s: float
    d: float
    yaw: float  # degrees
    speed: float  # mph
    # Previous path given to the planner, minus the points already driven
    previous_path_x: List[float] = []
    previous_path_y: List[float] = []
    # Previous path's end s and d values
    end_path_s: float = 0.0
    end_path_d: float = 0.0
    # Other cars on the same side of the road: [id, x, y, vx, vy, s, d]
    sensor_fusion: List[List[float]] = []

    def to_ego_state(self) -> EgoState:
        n = min(len(self.previous_path_x), len(self.previous_path_y))
        if n != len(self.previous_path_x) or n != len(self.previous_path_y):
            logger.warning(
                "previous_path_x/y lengths differ (%d/%d), truncating",
                len(self.previous_path_x), len(self.previous_path_y),
            )
        return EgoState(
            x=self.x,
            y=self.y,
            s=self.s,
            d=self.d,
            yaw=deg2rad(self.yaw),
            speed=mph2mps(self.speed),
            previous_path=Path(list(self.previous_path_x[:n]), list(self.previous_path_y[:n])),
            end_path_s=self.end_path_s,
            end_path_d=self.end_path_d,
        )

    def observations(self) -> List[VehicleObservation]:
        cars = []
        for row in self.sensor_fusion:
            if len(row) < 7:
                logger.warning("Skipping short sensor fusion row %r", row)
                continue
            cars.append(VehicleObservation.from_row(row))
        return cars


class ControlMessage(BaseModel):
    """Next path sent back to the simulator."""
    next_x: List[float]
    next_y: List[float]

    @classmethod
    def from_plan(cls, plan: PlanOutput) -> "ControlMessage":
        return cls(**plan.to_message())


class PlannerStatus(BaseModel):
    """Planner summary for monitoring."""
    initialized: bool
    state: Optional[str] = None
    target_lane: Optional[int] = None
    target_speed: Optional[float] = None
    changing_lane: Optional[int] = None
    collision_warning: bool = False
    lap: int = 0
    cycles: int = 0


def parse_socket_message(message: str) -> Tuple[Optional[str], Optional[dict]]:
    """
    Parse a socket.io event frame ``42["event", {...}]``.

    Returns (event, payload). event is None for frames that are not events;
    payload is None when the simulator sent no data (manual driving).
    """
    if not message or len(message) <= 2 or not message.startswith(SOCKET_EVENT_PREFIX):
        return None, None
    try:
        body = json.loads(message[len(SOCKET_EVENT_PREFIX):])
    except json.JSONDecodeError:
        logger.warning("Dropping unparsable socket frame: %.80s", message)
        return None, None
    if not isinstance(body, list) or not body or not isinstance(body[0], str):
        return None, None
    payload = body[1] if len(body) > 1 else None
    if not isinstance(payload, dict):
        payload = None
    return body[0], payload


def control_frame(message: ControlMessage) -> str:
    return SOCKET_EVENT_PREFIX + json.dumps(["control", message.model_dump()])
