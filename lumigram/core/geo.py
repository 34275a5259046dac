"""
Spherical-earth helpers.

Distances use the haversine formula on a sphere of radius 6,371,000 m. This
is not geodesic-exact: error against the WGS-84 ellipsoid is up to ~0.5%,
which is well under GPS noise at check-in distances.
"""
from __future__ import annotations

import math

from lumigram.core.contracts import Coordinate

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in metres between two coordinates."""
    lat1, lon1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lon2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    x = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(x)))


def same_point(a: Coordinate | None, b: Coordinate | None, eps: float = 1e-9) -> bool:
    if a is None or b is None:
        return a is b
    return abs(a.latitude - b.latitude) < eps and abs(a.longitude - b.longitude) < eps


def format_distance(distance_m: float | None) -> str:
    if distance_m is None or not math.isfinite(distance_m):
        return "—"
    if distance_m >= 1000:
        return f"{distance_m / 1000:.2f} km"
    return f"{int(math.floor(distance_m + 0.5))} m"
