"""Douglas-Peucker simplification of breadcrumb trails.

Distances are measured in a locally flat lat/lng plane (degrees scaled to
meters at the point's latitude), which is accurate enough for walks of a few
kilometers but is not a geodesic distance.
"""

import math
from typing import Sequence, TypeVar

METERS_PER_DEGREE = 111111
EPSILON = 1e-9  # meters

P = TypeVar("P")


def perpendicular_distance(point, start, end) -> float:
    """Distance in meters from point to the segment start-end"""
    a = point.lat - start.lat
    b = point.lng - start.lng
    c = end.lat - start.lat
    d = end.lng - start.lng

    len_sq = c * c + d * d
    param = (a * c + b * d) / len_sq if len_sq != 0 else -1

    if param < 0:
        xx, yy = start.lat, start.lng
    elif param > 1:
        xx, yy = end.lat, end.lng
    else:
        xx = start.lat + param * c
        yy = start.lng + param * d

    dx = (point.lat - xx) * METERS_PER_DEGREE
    dy = (point.lng - yy) * METERS_PER_DEGREE * math.cos(math.radians(point.lat))
    return math.sqrt(dx * dx + dy * dy)


def simplify(points: Sequence[P], tolerance: float) -> list[P]:
    """Reduce a polyline with the Douglas-Peucker algorithm.

    Args:
        points: Ordered objects with lat/lng attributes
        tolerance: Maximum allowed deviation in meters (>= 0)

    Returns:
        A subsequence of the input (same objects) that always keeps the first
        and last points
    """
    if tolerance < 0:
        raise ValueError("tolerance must be >= 0")
    if len(points) <= 2:
        return list(points)

    keep = [False] * len(points)
    keep[0] = keep[-1] = True
    stack = [(0, len(points) - 1)]

    while stack:
        first, last = stack.pop()
        max_distance = 0.0
        index = first
        for i in range(first + 1, last):
            distance = perpendicular_distance(points[i], points[first], points[last])
            if distance > max_distance:
                index = i
                max_distance = distance

        if max_distance > tolerance and max_distance > EPSILON:
            keep[index] = True
            stack.append((first, index))
            stack.append((index, last))

    return [p for p, kept in zip(points, keep) if kept]


def compress_breadcrumbs(breadcrumbs: Sequence[P], tolerance: float,
                         min_points: int = 20) -> list[P]:
    """Simplify a trail, falling back to uniform sampling if too few points survive.

    Straight walks collapse to two points under Douglas-Peucker, which loses
    the timing information carried by the breadcrumbs. If simplification
    keeps fewer than min(min_points, len) points, every n-th breadcrumb is
    kept instead. The result never has more points than the input.
    """
    if len(breadcrumbs) <= 2:
        return list(breadcrumbs)

    compressed = simplify(breadcrumbs, tolerance)
    if len(compressed) >= min(min_points, len(breadcrumbs)):
        return compressed

    step = max(1, len(breadcrumbs) // min_points)
    sampled = [breadcrumbs[0]]
    sampled.extend(breadcrumbs[i] for i in range(step, len(breadcrumbs) - 1, step))
    sampled.append(breadcrumbs[-1])
    return sampled
