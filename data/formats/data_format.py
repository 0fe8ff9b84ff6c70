"""
Data format definitions for the highway planner.

All values are in internal units: meters, meters/second and radians.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Waypoint:
    """Sample point on the road centerline."""
    x: float
    y: float
    s: float  # arc length along the loop
    dx: float  # unit normal x (points to increasing d)
    dy: float  # unit normal y


@dataclass
class VehicleObservation:
    """Other vehicle as reported by sensor fusion."""
    id: int
    x: float
    y: float
    vx: float
    vy: float
    s: float
    d: float

    @classmethod
    def from_row(cls, row) -> "VehicleObservation":
        """Build from a sensor fusion row ``[id, x, y, vx, vy, s, d]``."""
        return cls(
            id=int(row[0]),
            x=float(row[1]),
            y=float(row[2]),
            vx=float(row[3]),
            vy=float(row[4]),
            s=float(row[5]),
            d=float(row[6]),
        )


@dataclass
class Path:
    """Trajectory as parallel x/y lists."""
    x: List[float] = field(default_factory=list)
    y: List[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.x)

    def append(self, x: float, y: float) -> None:
        self.x.append(float(x))
        self.y.append(float(y))

    def extend(self, other: "Path") -> None:
        self.x.extend(other.x)
        self.y.extend(other.y)

    def last(self, offset: int = 1) -> Tuple[float, float]:
        return self.x[-offset], self.y[-offset]


@dataclass
class EgoState:
    """Ego vehicle state for one planning cycle."""
    x: float
    y: float
    s: float
    d: float
    yaw: float  # radians
    speed: float  # m/s
    previous_path: Path = field(default_factory=Path)
    end_path_s: float = 0.0
    end_path_d: float = 0.0


@dataclass
class ReferencePoint:
    """Pose the new trajectory is attached to."""
    x: float
    y: float
    x_prev: float
    y_prev: float
    s: float
    d: float
    yaw: float
    speed: float
    lane: int
    planned_points: int  # unconsumed points of the previous path


@dataclass
class PlanOutput:
    """Result of one planning cycle."""
    path: Path
    state: str
    target_lane: int
    target_speed: float
    collision_warning: bool
    lap: int
    # Diagnostics
    best_lane: Optional[int] = None
    reference_lane: Optional[int] = None
    new_points: int = 0
    degraded: bool = False
    lane_info: List[Dict[str, Any]] = field(default_factory=list)

    def to_message(self) -> Dict[str, List[float]]:
        """Serialize the trajectory the way the simulator expects it."""
        return {"next_x": list(self.path.x), "next_y": list(self.path.y)}
