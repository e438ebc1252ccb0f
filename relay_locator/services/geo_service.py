"""Great-circle distance between coordinates."""

from math import atan2, cos, radians, sin, sqrt

from relay_locator.models.relay import Coordinate

EARTH_RADIUS_KM = 6371.0


def distance_km(a: Coordinate, b: Coordinate) -> float:
    """Haversine distance in kilometers between two coordinates."""
    lat1 = radians(a.latitude)
    lat2 = radians(b.latitude)
    dlat = lat2 - lat1
    dlon = radians(b.longitude - a.longitude)

    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    # Rounding can push h slightly outside [0, 1] near antipodes
    h = min(1.0, max(0.0, h))

    return EARTH_RADIUS_KM * 2 * atan2(sqrt(h), sqrt(1 - h))
