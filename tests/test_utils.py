"""
Tests for trajectory/utils.py numeric helpers.
"""

import math

import numpy as np
import pytest

from trajectory.utils import (
    angle_difference,
    clamp,
    mph2mps,
    mps2mph,
    normalize_angle,
    to_local_frame,
    to_world_frame,
)


@pytest.mark.parametrize("angle,expected", [
    (0.0, 0.0),
    (math.pi, math.pi),
    (-math.pi, math.pi),
    (3.0 * math.pi, math.pi),
    (2.0 * math.pi + 0.5, 0.5),
    (-2.0 * math.pi - 0.5, -0.5),
])
def test_normalize_angle(angle, expected):
    assert normalize_angle(angle) == pytest.approx(expected)


def test_angle_difference_wraps():
    assert angle_difference(math.pi - 0.1, -math.pi + 0.1) == pytest.approx(0.2)
    assert angle_difference(0.0, math.pi) == pytest.approx(math.pi)


def test_speed_units():
    assert mph2mps(50.0) == pytest.approx(22.352)
    assert mps2mph(mph2mps(37.0)) == pytest.approx(37.0)


def test_clamp():
    assert clamp(5.0, 0.0, 3.0) == 3.0
    assert clamp(-1.0, 0.0, 3.0) == 0.0
    assert clamp(float("nan"), 0.0, 3.0) == 0.0
    assert clamp(float("inf"), 0.0, 3.0) == 3.0
    assert clamp(float("-inf"), 0.0, 3.0) == 0.0


def test_frame_transforms_invert():
    xs = np.array([10.0, 12.0, 15.0])
    ys = np.array([-3.0, 4.0, 0.5])
    local_x, local_y = to_local_frame(xs, ys, 10.0, -3.0, math.pi / 2.0)
    assert local_x[0] == pytest.approx(0.0)
    # A point straight ahead along the heading has positive local x
    assert local_x[1] == pytest.approx(7.0)
    assert local_y[1] == pytest.approx(-2.0)

    back_x, back_y = to_world_frame(local_x, local_y, 10.0, -3.0, math.pi / 2.0)
    assert np.allclose(back_x, xs)
    assert np.allclose(back_y, ys)
