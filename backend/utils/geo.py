"""Great-circle helpers shared by the prefilter, scorers and density service."""

from __future__ import annotations

import math


EARTH_RADIUS_MILES = 3958.8
MILES_PER_DEGREE_LATITUDE = 69.0


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Return the great-circle distance between two points in miles."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = (
        math.sin(d_phi / 2.0) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    )
    return 2.0 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(a)))


def bounding_box(
    lat: float,
    lng: float,
    radius_miles: float,
) -> tuple[float, float, float, float]:
    """Return (south, north, west, east) degrees enclosing the search circle.

    The box is a superset of the circle; callers still run the exact
    haversine check on every candidate.
    """
    lat_delta = radius_miles / MILES_PER_DEGREE_LATITUDE
    cos_lat = math.cos(math.radians(lat))
    if cos_lat < 1e-6:
        lng_delta = 180.0
    else:
        lng_delta = min(180.0, radius_miles / (MILES_PER_DEGREE_LATITUDE * cos_lat))
    return (
        max(-90.0, lat - lat_delta),
        min(90.0, lat + lat_delta),
        lng - lng_delta,
        lng + lng_delta,
    )


def circle_area_sq_miles(radius_miles: float) -> float:
    return math.pi * radius_miles * radius_miles


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (not banker's rounding)."""
    return int(math.floor(value + 0.5))
