from __future__ import annotations

import math
from typing import Tuple

import numpy as np


MPH_TO_MPS = 0.44704


def deg2rad(x: float) -> float:
    return x * math.pi / 180.0


def rad2deg(x: float) -> float:
    return x * 180.0 / math.pi


def mph2mps(x: float) -> float:
    return x * MPH_TO_MPS


def mps2mph(x: float) -> float:
    return x / MPH_TO_MPS


def normalize_angle(angle: float) -> float:
    """Wrap an angle into (-pi, pi]."""
    wrapped = math.fmod(angle + math.pi, 2.0 * math.pi)
    if wrapped <= 0.0:
        wrapped += 2.0 * math.pi
    return wrapped - math.pi


def angle_difference(a: float, b: float) -> float:
    """Absolute angular difference in [0, pi]."""
    return abs(normalize_angle(a - b))


def distance(x1: float, y1: float, x2: float, y2: float) -> float:
    return math.hypot(x2 - x1, y2 - y1)


def to_local_frame(
    xs: np.ndarray,
    ys: np.ndarray,
    origin_x: float,
    origin_y: float,
    yaw: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Translate and rotate world points into a frame at origin with x along yaw."""
    dx = np.asarray(xs, dtype=float) - origin_x
    dy = np.asarray(ys, dtype=float) - origin_y
    cos_yaw = math.cos(-yaw)
    sin_yaw = math.sin(-yaw)
    local_x = dx * cos_yaw - dy * sin_yaw
    local_y = dx * sin_yaw + dy * cos_yaw
    return local_x, local_y


def to_world_frame(
    xs: np.ndarray,
    ys: np.ndarray,
    origin_x: float,
    origin_y: float,
    yaw: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of :func:`to_local_frame`."""
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    cos_yaw = math.cos(yaw)
    sin_yaw = math.sin(yaw)
    world_x = xs * cos_yaw - ys * sin_yaw + origin_x
    world_y = xs * sin_yaw + ys * cos_yaw + origin_y
    return world_x, world_y


def clamp(value: float, low: float, high: float) -> float:
    """Clamp value into [low, high]; NaN falls back to low."""
    if not math.isfinite(value):
        if value == math.inf:
            return high
        return low
    return max(low, min(high, value))
