"""
distance.py — Great-circle distance on a spherical Earth.

Callers validate coordinates first; nothing here checks ranges.
"""

from __future__ import annotations

import math

from pothole_map.models.report import Coordinate

EARTH_RADIUS_METERS = 6_371_000.0


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters between two lat/lng pairs."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlam = math.radians(lng2 - lng1)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlam / 2) ** 2
    # Rounding can push h a hair outside [0, 1] near identical or antipodal points.
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(h))


def distance_meters(a: Coordinate, b: Coordinate) -> float:
    return haversine_meters(a.latitude, a.longitude, b.latitude, b.longitude)


def antipode(point: Coordinate) -> Coordinate:
    """The point on the opposite side of the globe."""
    lng = point.longitude + 180.0 if point.longitude <= 0 else point.longitude - 180.0
    return Coordinate(latitude=-point.latitude, longitude=lng)
