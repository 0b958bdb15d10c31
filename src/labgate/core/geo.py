from __future__ import annotations
from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt
from typing import Literal

"""
Geospatial helpers.

A facility geofence is a circle of a few tens to a few hundred meters, so a spherical
Earth model is accurate enough; we avoid pulling in heavier GIS dependencies.
"""

EARTH_RADIUS_M = 6_371_000

AccuracyLevel = Literal["excellent", "good", "fair", "poor"]


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""

    lat: float
    lon: float


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Compute great-circle distance in meters between two points."""
    lat1 = radians(a.lat)
    lon1 = radians(a.lon)
    lat2 = radians(b.lat)
    lon2 = radians(b.lon)

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    # Rounding can push `h` a hair above 1 for antipodal points.
    return 2 * EARTH_RADIUS_M * asin(sqrt(min(1.0, h)))


def is_valid_coordinate(lat: object, lon: object) -> bool:
    """Return True for finite numeric lat in [-90, 90] and lon in [-180, 180]."""
    if isinstance(lat, bool) or isinstance(lon, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return False
    if lat != lat or lon != lon:
        return False
    return -90 <= lat <= 90 and -180 <= lon <= 180


def accuracy_level(accuracy_m: float) -> AccuracyLevel:
    """Classify a GPS accuracy radius for display.

    Accuracy is informational only; it never gates a geofence decision.
    """
    if accuracy_m <= 5:
        return "excellent"
    if accuracy_m <= 15:
        return "good"
    if accuracy_m <= 30:
        return "fair"
    return "poor"


def format_distance(distance_m: float) -> str:
    """Render a distance the way it is shown to operators (`42 meters`, `1.3 km`)."""
    if distance_m < 1000:
        return f"{round(distance_m)} meters"
    return f"{distance_m / 1000:.1f} km"
