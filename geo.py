"""
Great-circle distance helpers.

Coordinates are (latitude, longitude) pairs in degrees. A pair with a missing
component is not a location; callers check for that before measuring.
"""
from math import radians, sin, cos, sqrt, atan2
from typing import Optional, Tuple

EARTH_RADIUS_MILES = 3958.8
EARTH_RADIUS_KM = 6371.0
KM_PER_MILE = 1.609344

Point = Tuple[Optional[float], Optional[float]]


def _central_angle(a: Point, b: Point) -> float:
    lat1, lon1 = a
    lat2, lon2 = b
    if None in (lat1, lon1, lat2, lon2):
        raise ValueError("haversine needs both latitude and longitude on each point")
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    rlat1 = radians(lat1)
    rlat2 = radians(lat2)
    a_ = sin(dlat / 2) ** 2 + cos(rlat1) * cos(rlat2) * sin(dlon / 2) ** 2
    return 2 * atan2(sqrt(a_), sqrt(1 - a_))


def haversine_miles(a: Point, b: Point) -> float:
    return EARTH_RADIUS_MILES * _central_angle(a, b)


def haversine_km(a: Point, b: Point) -> float:
    return EARTH_RADIUS_KM * _central_angle(a, b)


def has_coordinates(point: Point) -> bool:
    return point[0] is not None and point[1] is not None


def to_miles(value: float, unit: str = "mi") -> float:
    """Convert a radius to miles. Every radius comparison goes through here."""
    if unit in ("mi", "miles"):
        return float(value)
    if unit in ("km", "kilometers"):
        return float(value) / KM_PER_MILE
    raise ValueError(f"unknown distance unit {unit!r}")
