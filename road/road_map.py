"""
Road geometry: waypoint table and Frenet <-> Cartesian conversion on a closed loop.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from data.formats.data_format import Waypoint
from trajectory.utils import angle_difference, normalize_angle

logger = logging.getLogger(__name__)

# Loop length of the reference highway track
DEFAULT_MAX_S = 6945.554

# Segments shorter than this have no usable heading
MIN_SEGMENT_LENGTH = 1e-9

# Projections this far outside a segment still count as on it
PROJECTION_SLACK = 1e-6

# Backward s movement up to this is treated as jitter, not a lap
BACKTRACK_TOLERANCE = 10.0

_ROW_SPLIT = re.compile(r"[,\s]+")


class MapLoadError(RuntimeError):
    """No usable waypoints could be loaded."""


class DegenerateSegment(ArithmeticError):
    """Waypoint segment too short to define a heading."""

    def __init__(self, index: int, length: float):
        super().__init__(f"waypoint segment {index} has length {length:.3g}")
        self.index = index
        self.length = length


@dataclass
class RoadConfig:
    """Configuration for the road map."""

    map_file: Optional[str] = None
    max_s: Optional[float] = DEFAULT_MAX_S
    # Point known to lie inside the loop; waypoint centroid when None
    interior_x: Optional[float] = 1000.0
    interior_y: Optional[float] = 2000.0
    next_waypoint_angle: float = math.pi / 4.0


def build_road_config(road_cfg: dict) -> RoadConfig:
    """Build a RoadConfig from the ``road`` config section."""
    max_s = road_cfg.get("max_s", DEFAULT_MAX_S)
    interior = road_cfg.get("interior_reference", [1000.0, 2000.0])
    interior_x = interior_y = None
    if interior is not None:
        interior_x, interior_y = float(interior[0]), float(interior[1])
    return RoadConfig(
        map_file=road_cfg.get("map_file"),
        max_s=float(max_s) if max_s is not None else None,
        interior_x=interior_x,
        interior_y=interior_y,
        next_waypoint_angle=float(road_cfg.get("next_waypoint_angle", math.pi / 4.0)),
    )


def _parse_row(line: str) -> Optional[Tuple[float, float, float, float, float]]:
    fields = [f for f in _ROW_SPLIT.split(line.strip()) if f]
    if len(fields) < 5:
        return None
    try:
        return tuple(float(f) for f in fields[:5])  # type: ignore[return-value]
    except ValueError:
        return None


def load_waypoints(path: Union[str, Path]) -> List[Tuple[float, float, float, float, float]]:
    """Read ``x y s dx dy`` rows (whitespace or comma separated) from a file."""
    path = Path(path)
    if not path.exists():
        raise MapLoadError(f"Waypoint file not found: {path}")

    records = []
    with open(path, "r") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip() or line.lstrip().startswith("#"):
                continue
            row = _parse_row(line)
            if row is None:
                logger.warning("Skipping malformed waypoint row %d in %s: %r", line_no, path, line.rstrip())
                continue
            records.append(row)
    logger.info(f"Read {len(records)} waypoints from {path}")
    return records


class RoadMap:
    """
    Waypoint table of a closed-loop road.

    The table holds the loaded waypoints followed by a closing record equal to
    the first waypoint with ``s = max_s`` so the seam can be interpolated.
    """

    def __init__(
        self,
        waypoints: Sequence[Waypoint],
        max_s: float,
        interior_point: Optional[Tuple[float, float]] = None,
        next_waypoint_angle: float = math.pi / 4.0,
    ):
        if not waypoints:
            raise MapLoadError("Road map needs at least one waypoint")
        self.max_s = float(max_s)
        self.next_waypoint_angle = float(next_waypoint_angle)

        table = np.array([[w.x, w.y, w.s, w.dx, w.dy] for w in waypoints], dtype=float)
        closing = table[0].copy()
        closing[2] = self.max_s
        self._table = np.vstack([table, closing])

        self.x = self._table[:, 0]
        self.y = self._table[:, 1]
        self.s = self._table[:, 2]
        self.dx = self._table[:, 3]
        self.dy = self._table[:, 4]
        # Number of real waypoints (without the closing record)
        self.count = len(waypoints)

        if interior_point is None:
            interior_point = (float(np.mean(self.x[:-1])), float(np.mean(self.y[:-1])))
        self.interior_point = (float(interior_point[0]), float(interior_point[1]))

    @classmethod
    def load(
        cls,
        source: Iterable[Sequence[float]],
        max_s: Optional[float] = None,
        interior_point: Optional[Tuple[float, float]] = None,
        next_waypoint_angle: float = math.pi / 4.0,
    ) -> "RoadMap":
        """Build a road map from ordered ``(x, y, s, dx, dy)`` records."""
        waypoints = []
        for record in source:
            try:
                values = [float(v) for v in record[:5]]
            except (TypeError, ValueError):
                logger.warning("Skipping unreadable waypoint record %r", record)
                continue
            if len(values) < 5 or not all(math.isfinite(v) for v in values):
                logger.warning("Skipping incomplete waypoint record %r", record)
                continue
            waypoints.append(Waypoint(*values))

        if not waypoints:
            raise MapLoadError("Waypoint source yielded no usable records")

        if max_s is None:
            last, first = waypoints[-1], waypoints[0]
            max_s = last.s + math.hypot(first.x - last.x, first.y - last.y)
        if max_s <= waypoints[-1].s:
            raise MapLoadError(
                f"max_s={max_s:.3f} must exceed the last waypoint s={waypoints[-1].s:.3f}"
            )

        logger.info(f"Loaded road map with {len(waypoints)} waypoints (max_s={max_s:.3f})")
        return cls(waypoints, max_s, interior_point, next_waypoint_angle)

    def __len__(self) -> int:
        return self.count

    def waypoint(self, index: int) -> Waypoint:
        row = self._table[index]
        return Waypoint(float(row[0]), float(row[1]), float(row[2]), float(row[3]), float(row[4]))

    def wrap_s(self, s: float) -> float:
        """Wrap s into [0, max_s)."""
        wrapped = s % self.max_s
        # fmod drift can land exactly on max_s
        if wrapped >= self.max_s:
            wrapped = 0.0
        return wrapped

    def s_distance(self, s_from: float, s_to: float) -> float:
        """Forward distance along the loop from s_from to s_to."""
        return (s_to - s_from) % self.max_s

    def signed_gap(self, s_from: float, s_to: float) -> float:
        """Shortest signed distance along the loop, positive when s_to is ahead."""
        gap = self.s_distance(s_from, s_to)
        if gap > self.max_s / 2.0:
            gap -= self.max_s
        return gap

    def travelled(self, s_from: float, s_to: float) -> float:
        """Distance driven from s_from to s_to; small backward jitter counts as zero."""
        if -BACKTRACK_TOLERANCE <= self.signed_gap(s_from, s_to) < 0.0:
            return 0.0
        return self.s_distance(s_from, s_to)

    def _segment_heading(self, index: int) -> float:
        """Heading of the segment from waypoint ``index`` to ``index + 1``."""
        seg_x = self.x[index + 1] - self.x[index]
        seg_y = self.y[index + 1] - self.y[index]
        length = math.hypot(seg_x, seg_y)
        if length < MIN_SEGMENT_LENGTH:
            raise DegenerateSegment(index, length)
        return math.atan2(seg_y, seg_x)

    def segment_index(self, s: float) -> int:
        """Index of the table segment whose s interval contains s."""
        wrapped = self.wrap_s(s)
        index = int(np.searchsorted(self.s, wrapped, side="right")) - 1
        # NaN and seam drift end up outside the table
        return min(max(index, 0), len(self.s) - 2)

    def to_xy(self, s: float, d: float) -> Tuple[float, float]:
        """Convert Frenet (s, d) into Cartesian (x, y)."""
        index = self.segment_index(s)
        seg_s = self.wrap_s(s) - self.s[index]

        try:
            heading = self._segment_heading(index)
        except DegenerateSegment as exc:
            logger.debug("to_xy: %s, using waypoint normal", exc)
            return (
                float(self.x[index] + d * self.dx[index]),
                float(self.y[index] + d * self.dy[index]),
            )

        seg_x = self.x[index] + seg_s * math.cos(heading)
        seg_y = self.y[index] + seg_s * math.sin(heading)

        perp_heading = heading - math.pi / 2.0
        x = seg_x + d * math.cos(perp_heading)
        y = seg_y + d * math.sin(perp_heading)
        return float(x), float(y)

    def closest_waypoint(self, x: float, y: float) -> int:
        """Index of the waypoint nearest to (x, y)."""
        dists = np.hypot(self.x[:self.count] - x, self.y[:self.count] - y)
        if np.all(np.isnan(dists)):
            return 0
        return int(np.nanargmin(dists))

    def next_waypoint(self, x: float, y: float, heading: float) -> int:
        """Nearest waypoint ahead of (x, y) when looking along heading."""
        closest = self.closest_waypoint(x, y)
        bearing = math.atan2(self.y[closest] - y, self.x[closest] - x)
        if angle_difference(normalize_angle(heading), bearing) > self.next_waypoint_angle:
            closest = (closest + 1) % self.count
        return closest

    def _projection(self, prev_wp: int, x: float, y: float) -> float:
        """Projection of (x, y) onto the segment starting at prev_wp, as a fraction of it."""
        next_wp = (prev_wp + 1) % self.count
        n_x = self.x[next_wp] - self.x[prev_wp]
        n_y = self.y[next_wp] - self.y[prev_wp]
        norm_sq = n_x * n_x + n_y * n_y
        if norm_sq < MIN_SEGMENT_LENGTH ** 2:
            logger.debug("to_frenet: %s", DegenerateSegment(int(prev_wp), math.sqrt(norm_sq)))
            return 0.0
        return ((x - self.x[prev_wp]) * n_x + (y - self.y[prev_wp]) * n_y) / norm_sq

    def to_frenet(self, x: float, y: float, heading: float) -> Tuple[float, float]:
        """Convert Cartesian (x, y) with a heading into Frenet (s, d)."""
        next_wp = self.next_waypoint(x, y, heading)
        prev_wp = (next_wp - 1) % self.count

        proj_norm = self._projection(prev_wp, x, y)
        # The bearing test can pick a neighbouring segment for points far off the center line
        if proj_norm < -PROJECTION_SLACK and self.count > 2:
            prev_wp = (prev_wp - 1) % self.count
            proj_norm = self._projection(prev_wp, x, y)
        elif proj_norm > 1.0 + PROJECTION_SLACK and self.count > 2:
            prev_wp = (prev_wp + 1) % self.count
            proj_norm = self._projection(prev_wp, x, y)
        next_wp = (prev_wp + 1) % self.count

        n_x = self.x[next_wp] - self.x[prev_wp]
        n_y = self.y[next_wp] - self.y[prev_wp]
        x_x = x - self.x[prev_wp]
        x_y = y - self.y[prev_wp]

        proj_x = proj_norm * n_x
        proj_y = proj_norm * n_y

        frenet_d = math.hypot(x_x - proj_x, x_y - proj_y)

        # Sign of d: points nearer the interior reference than their projection are negative
        center_x = self.interior_point[0] - self.x[prev_wp]
        center_y = self.interior_point[1] - self.y[prev_wp]
        center_to_pos = math.hypot(center_x - x_x, center_y - x_y)
        center_to_ref = math.hypot(center_x - proj_x, center_y - proj_y)
        if center_to_pos <= center_to_ref:
            frenet_d = -frenet_d

        frenet_s = self.s[prev_wp] + math.copysign(math.hypot(proj_x, proj_y), proj_norm)
        return float(self.wrap_s(frenet_s)), float(frenet_d)


def build_road_map(road_cfg: dict, source=None) -> RoadMap:
    """Build a RoadMap from the ``road`` config section and a waypoint source.

    ``source`` is either a list of records or a path; when omitted the
    configured ``map_file`` is read.
    """
    config = build_road_config(road_cfg)
    if source is None:
        source = config.map_file
    if source is None:
        raise MapLoadError("No waypoint source configured")
    if isinstance(source, (str, Path)):
        source = load_waypoints(source)

    interior = None
    if config.interior_x is not None and config.interior_y is not None:
        interior = (config.interior_x, config.interior_y)
    return RoadMap.load(
        source,
        max_s=config.max_s,
        interior_point=interior,
        next_waypoint_angle=config.next_waypoint_angle,
    )
