"""Tests for geographic helpers."""

import pytest

from soundwalk.geo import (
    bearing_between,
    bearing_to_compass,
    bearing_to_stereo_pan,
    distance_meters,
    haversine_distance,
    retry_with_backoff,
)
from soundwalk.models import Position

from conftest import BASE_LAT, BASE_LNG, offset


class TestDistance:
    def test_same_point_is_zero(self):
        assert haversine_distance(BASE_LAT, BASE_LNG, BASE_LAT, BASE_LNG) == 0

    def test_one_degree_latitude(self):
        assert haversine_distance(0, 0, 1, 0) == pytest.approx(111_195, rel=1e-3)

    def test_symmetric(self):
        lat, lng = offset(120, -40)
        assert haversine_distance(BASE_LAT, BASE_LNG, lat, lng) == pytest.approx(
            haversine_distance(lat, lng, BASE_LAT, BASE_LNG))

    def test_distance_meters_uses_lat_lng(self):
        lat, lng = offset(100, 0)
        a = Position(lat=BASE_LAT, lng=BASE_LNG)
        b = Position(lat=lat, lng=lng)
        assert distance_meters(a, b) == pytest.approx(100, rel=1e-2)


class TestBearing:
    @pytest.mark.parametrize("north,east,expected", [
        (100, 0, 0),
        (0, 100, 90),
        (-100, 0, 180),
        (0, -100, 270),
    ])
    def test_cardinal_directions(self, north, east, expected):
        lat, lng = offset(north, east)
        bearing = bearing_between(BASE_LAT, BASE_LNG, lat, lng)
        assert bearing == pytest.approx(expected, abs=0.5) or bearing == pytest.approx(expected + 360, abs=0.5)

    def test_range(self):
        lat, lng = offset(-1, -100)
        bearing = bearing_between(BASE_LAT, BASE_LNG, lat, lng)
        assert 0 <= bearing < 360

    def test_compass(self):
        assert bearing_to_compass(0) == "north"
        assert bearing_to_compass(44) == "northeast"
        assert bearing_to_compass(350) == "north"
        assert bearing_to_compass(270) == "west"


class TestStereoPan:
    def test_east_is_right_west_is_left(self):
        assert bearing_to_stereo_pan(90) == pytest.approx(1.0)
        assert bearing_to_stereo_pan(270) == pytest.approx(-1.0)

    def test_front_and_back_are_centered(self):
        assert bearing_to_stereo_pan(0) == pytest.approx(0.0)
        assert bearing_to_stereo_pan(180) == pytest.approx(0.0, abs=1e-9)

    def test_always_in_range(self):
        for bearing in range(0, 360, 7):
            assert -1.0 <= bearing_to_stereo_pan(bearing) <= 1.0


class TestRetryWithBackoff:
    def test_returns_first_success(self):
        calls = []

        def func():
            calls.append(1)
            return "fix" if len(calls) == 3 else None

        assert retry_with_backoff(func, max_time=5, initial_delay=0.01, max_delay=0.02) == "fix"
        assert len(calls) == 3

    def test_gives_up_after_max_time(self):
        assert retry_with_backoff(lambda: None, max_time=0.05, initial_delay=0.01, max_delay=0.02) is None
