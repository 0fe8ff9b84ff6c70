"""
Trajectory synthesis.
Fits a spline from the reference pose to the target lane and samples it at the
commanded speed to fill the fixed-size path horizon.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.interpolate import CubicSpline

from data.formats.data_format import Path, ReferencePoint
from road.road_map import RoadMap
from trajectory.utils import to_local_frame, to_world_frame

logger = logging.getLogger(__name__)


@dataclass
class TrajectoryConfig:
    """Configuration for trajectory synthesis."""

    n_path_points: int = 50
    anchor_spacing: float = 30.0  # m between target-lane anchors
    anchor_count: int = 3
    lookahead_distance: float = 30.0  # m, chord used to pace the samples
    dt: float = 0.02  # s between path points


def build_trajectory_config(trajectory_cfg: dict) -> TrajectoryConfig:
    """Build a TrajectoryConfig from the ``trajectory`` config section."""
    return TrajectoryConfig(
        n_path_points=int(trajectory_cfg.get("n_path_points", 50)),
        anchor_spacing=float(trajectory_cfg.get("anchor_spacing", 30.0)),
        anchor_count=int(trajectory_cfg.get("anchor_count", 3)),
        lookahead_distance=float(trajectory_cfg.get("lookahead_distance", 30.0)),
        dt=float(trajectory_cfg.get("dt", 0.02)),
    )


class TrajectorySynthesizer:
    """Builds the next path from the reference pose, target lane center and speed."""

    def __init__(self, road_map: RoadMap, config: TrajectoryConfig) -> None:
        self.road_map = road_map
        self.config = config

    def anchors(self, ref: ReferencePoint, target_d: float) -> Tuple[np.ndarray, np.ndarray]:
        """World anchors: two reference points plus target-lane points ahead."""
        xs = [ref.x_prev, ref.x]
        ys = [ref.y_prev, ref.y]
        for i in range(1, self.config.anchor_count + 1):
            x, y = self.road_map.to_xy(ref.s + self.config.anchor_spacing * i, target_d)
            xs.append(x)
            ys.append(y)
        return np.array(xs, dtype=float), np.array(ys, dtype=float)

    @staticmethod
    def _usable_anchors(local_x: np.ndarray, local_y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Keep finite anchors with strictly increasing local x."""
        finite = np.isfinite(local_x) & np.isfinite(local_y)
        local_x = local_x[finite]
        local_y = local_y[finite]
        keep_x = []
        keep_y = []
        for x, y in zip(local_x, local_y):
            if keep_x and x <= keep_x[-1]:
                continue
            keep_x.append(x)
            keep_y.append(y)
        return np.array(keep_x), np.array(keep_y)

    def fit(self, ref: ReferencePoint, target_d: float):
        """Fit the path spline in the reference frame. Returns None when impossible."""
        world_x, world_y = self.anchors(ref, target_d)
        local_x, local_y = to_local_frame(world_x, world_y, ref.x, ref.y, ref.yaw)
        local_x, local_y = self._usable_anchors(local_x, local_y)

        if len(local_x) < 2:
            logger.warning("Only %d usable anchors, skipping new path points", len(local_x))
            return None
        try:
            return CubicSpline(local_x, local_y, bc_type="natural")
        except ValueError as exc:
            logger.warning(f"Spline fit failed: {exc}")
            return None

    def synthesize(
        self,
        ref: ReferencePoint,
        previous_path: Path,
        target_d: float,
        target_speed: float,
        dt: Optional[float] = None,
    ) -> Tuple[Path, bool]:
        """
        Build the next path.

        Args:
            ref: Reference pose the new points attach to.
            previous_path: Unconsumed previous path, re-emitted first.
            target_d: Lateral offset of the target lane center.
            target_speed: Commanded speed (m/s).
            dt: Sample period of the path (s); the configured period when None.

        Returns:
            (path, degraded) where degraded is True when no new points could be made.
        """
        path = Path(list(previous_path.x), list(previous_path.y))
        n_new = self.config.n_path_points - len(path)
        if n_new <= 0:
            return path, False

        spline = self.fit(ref, target_d)
        if spline is None:
            return path, True

        # Pace the samples with the straight chord to the lookahead point
        target_x = self.config.lookahead_distance
        target_y = float(spline(target_x))
        target_dist = math.hypot(target_x, target_y)
        if not math.isfinite(target_dist) or target_dist <= 0.0:
            logger.warning("Degenerate lookahead chord, skipping new path points")
            return path, True
        if dt is None or not dt > 0.0:
            dt = self.config.dt
        step = target_x / target_dist * dt * max(0.0, float(target_speed))

        x_spline = step * np.arange(1, n_new + 1, dtype=float)
        y_spline = spline(x_spline)
        xs, ys = to_world_frame(x_spline, y_spline, ref.x, ref.y, ref.yaw)
        for x, y in zip(xs, ys):
            path.append(x, y)
        return path, False
