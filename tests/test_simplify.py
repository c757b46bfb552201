"""Tests for Douglas-Peucker trail simplification."""

import pytest

from soundwalk.models import Breadcrumb
from soundwalk.simplify import compress_breadcrumbs, perpendicular_distance, simplify

from conftest import START_MS, offset


def crumbs(points):
    """Breadcrumbs from (north_m, east_m) offsets, one second apart"""
    result = []
    for i, (north, east) in enumerate(points):
        lat, lng = offset(north, east)
        result.append(Breadcrumb(lat=lat, lng=lng, timestamp=START_MS + i * 1000))
    return result


class TestPerpendicularDistance:
    def test_point_on_segment(self):
        a, p, b = crumbs([(0, 0), (50, 0), (100, 0)])
        assert perpendicular_distance(p, a, b) == pytest.approx(0, abs=1e-6)

    def test_point_beside_segment(self):
        a, p, b = crumbs([(0, 0), (50, 10), (100, 0)])
        assert perpendicular_distance(p, a, b) == pytest.approx(10, rel=0.02)

    def test_degenerate_segment_measures_to_start(self):
        a, p = crumbs([(0, 0), (30, 0)])
        assert perpendicular_distance(p, a, a) == pytest.approx(30, rel=0.02)


class TestSimplify:
    def test_short_inputs_unchanged(self):
        points = crumbs([(0, 0), (10, 0)])
        assert simplify(points, 5) == points
        assert simplify([], 5) == []

    def test_straight_line_collapses_to_endpoints(self):
        points = crumbs([(i * 10, 0) for i in range(10)])
        assert simplify(points, 1) == [points[0], points[-1]]

    def test_corner_is_kept(self):
        points = crumbs([(0, 0), (50, 0), (100, 0), (100, 50), (100, 100)])
        result = simplify(points, 3)
        assert result == [points[0], points[2], points[-1]]

    def test_zero_tolerance_drops_only_collinear_points(self):
        points = crumbs([(0, 0), (50, 0), (100, 0), (100, 50)])
        result = simplify(points, 0)
        assert points[2] in result
        assert result[0] is points[0] and result[-1] is points[-1]

    def test_result_is_ordered_subsequence(self):
        points = crumbs([(i * 5, (i % 3) * 8) for i in range(40)])
        result = simplify(points, 4)
        indexes = [points.index(p) for p in result]
        assert indexes == sorted(indexes)
        assert indexes[0] == 0 and indexes[-1] == len(points) - 1

    def test_negative_tolerance_rejected(self):
        with pytest.raises(ValueError):
            simplify(crumbs([(0, 0), (1, 1), (2, 0)]), -1)


class TestCompressBreadcrumbs:
    def test_straight_walk_falls_back_to_sampling(self):
        points = crumbs([(i * 2, 0) for i in range(100)])
        result = compress_breadcrumbs(points, 3, min_points=20)
        assert len(result) >= 20
        assert len(result) <= len(points)
        assert result[0] is points[0] and result[-1] is points[-1]

    def test_small_trail_never_grows(self):
        points = crumbs([(i * 2, 0) for i in range(8)])
        result = compress_breadcrumbs(points, 3, min_points=20)
        assert len(result) <= len(points)

    def test_winding_trail_keeps_simplified_points(self):
        points = crumbs([(i * 10, 40 if (i // 2) % 2 else 0) for i in range(60)])
        simplified = simplify(points, 3)
        assert len(simplified) >= 20
        assert compress_breadcrumbs(points, 3, min_points=20) == simplified
