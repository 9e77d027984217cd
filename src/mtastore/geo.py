"""Great-circle distance helpers."""

import math

EARTH_RADIUS_KM = 6371.0


def distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the haversine distance between two coordinates in kilometers."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
