"""
Tests for behavior/traffic.py: per-lane nearest cars and feasibility.
"""

import math
import random

import pytest

from behavior.traffic import LaneInfo, TrafficConfig, TrafficModel, build_traffic_config
from data.formats.data_format import VehicleObservation
from road.lane import Lane, LaneConfig
from synthetic_road import make_circle_map


def _car(car_id: int, s: float, d: float, speed: float = 20.0) -> VehicleObservation:
    return VehicleObservation(id=car_id, x=0.0, y=0.0, vx=speed, vy=0.0, s=s, d=d)


def _build(ref_s, cars, planned_points=0, dt=0.02, gap_fn=None, config=None):
    return TrafficModel.build(
        ref_s,
        cars,
        Lane(LaneConfig()),
        config or TrafficConfig(),
        planned_points,
        dt,
        gap_fn=gap_fn,
    )


class TestLaneInfo:
    def test_empty_lane_is_clear(self):
        info = LaneInfo()
        assert info.feasible
        assert info.is_clear()
        assert info.front_gap == math.inf
        assert info.back_gap == -math.inf


class TestTrafficModel:
    def test_empty_road(self):
        traffic = _build(100.0, [])
        assert len(traffic) == 3
        assert all(info.is_clear() for info in traffic.lanes)

    def test_nearest_front_car_kept(self):
        traffic = _build(100.0, [_car(1, 160.0, 6.0), _car(2, 130.0, 6.0, 15.0), _car(3, 200.0, 6.0)])
        info = traffic[1]
        assert info.front_car == 2
        assert info.front_gap == pytest.approx(30.0)
        assert info.front_speed == pytest.approx(15.0)
        assert info.feasible

    def test_nearest_back_car_kept(self):
        traffic = _build(100.0, [_car(1, 60.0, 2.0), _car(2, 80.0, 2.0)])
        info = traffic[0]
        assert info.back_car == 2
        assert info.back_gap == pytest.approx(-20.0)
        assert info.front_car is None
        assert info.feasible

    def test_back_car_beyond_horizon_ignored(self):
        traffic = _build(100.0, [_car(1, 20.0, 2.0)])
        assert traffic[0].back_car is None
        assert traffic[0].back_gap == -math.inf

    def test_front_car_inside_buffer_is_infeasible(self):
        traffic = _build(100.0, [_car(1, 108.0, 10.0)])
        assert not traffic[2].feasible
        assert traffic[0].feasible
        assert traffic[1].feasible

    def test_back_car_inside_buffer_is_infeasible(self):
        traffic = _build(100.0, [_car(1, 95.0, 6.0)])
        assert not traffic[1].feasible

    def test_car_at_reference_counts_as_behind(self):
        traffic = _build(100.0, [_car(1, 100.0, 6.0)])
        assert traffic[1].back_car == 1
        assert traffic[1].front_car is None
        assert not traffic[1].feasible

    def test_prediction_over_previous_path(self):
        # 40 unconsumed points at 20 ms: 0.8 s at 20 m/s moves the car 16 m
        traffic = _build(100.0, [_car(1, 88.0, 6.0, 20.0)], planned_points=40)
        info = traffic[1]
        assert info.back_gap == pytest.approx(-12.0)
        assert info.back_gap_next == pytest.approx(4.0)
        assert not info.feasible

    def test_front_gap_next_checked(self):
        # A stopped leader keeps its gap over the previous path
        traffic = _build(100.0, [_car(1, 115.0, 6.0, 0.0)], planned_points=40)
        assert traffic[1].front_gap_next == pytest.approx(15.0)
        assert traffic[1].feasible

    def test_off_road_cars_skipped(self):
        traffic = _build(100.0, [_car(1, 105.0, -2.0), _car(2, 105.0, 14.0), _car(3, 105.0, float("nan"))])
        assert all(info.front_car is None and info.back_car is None for info in traffic.lanes)

    def test_non_finite_gap_skipped(self):
        traffic = _build(100.0, [_car(1, float("inf"), 6.0)])
        assert traffic[1].front_car is None

    def test_wrap_aware_gap(self):
        road_map = make_circle_map()
        max_s = road_map.max_s
        cars = [_car(1, 15.0, 6.0), _car(2, max_s - 30.0, 2.0)]
        traffic = _build(max_s - 5.0, cars, gap_fn=road_map.signed_gap)
        assert traffic[1].front_car == 1
        assert traffic[1].front_gap == pytest.approx(20.0)
        assert traffic[0].back_car == 2
        assert traffic[0].back_gap == pytest.approx(-25.0)

    def test_feasible_implies_gaps_outside_buffers(self):
        rng = random.Random(7)
        config = TrafficConfig()
        for _ in range(200):
            cars = [
                _car(i, rng.uniform(0.0, 200.0), rng.uniform(0.0, 12.0), rng.uniform(0.0, 25.0))
                for i in range(rng.randint(0, 8))
            ]
            traffic = _build(100.0, cars, planned_points=rng.randint(0, 50), config=config)
            for info in traffic.lanes:
                if info.feasible:
                    assert info.front_gap > config.front_buffer
                    assert info.front_gap_next > config.front_buffer
                    assert info.back_gap < config.back_buffer
                    assert info.back_gap_next < config.back_buffer

    def test_summary(self):
        traffic = _build(100.0, [_car(4, 130.0, 6.0)])
        summary = traffic.summary()
        assert len(summary) == 3
        assert summary[1]["front_car"] == 4


class TestBuildTrafficConfig:
    def test_back_buffer_is_negative(self):
        assert build_traffic_config({"back_buffer": 12.0}).back_buffer == -12.0
        assert build_traffic_config({"back_buffer": -8.0}).back_buffer == -8.0

    def test_defaults(self):
        config = build_traffic_config({})
        assert config.lane_horizon == 50.0
        assert config.front_buffer == 10.0
        assert config.emergency_front_buffer == 5.0
