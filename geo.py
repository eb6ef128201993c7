"""Great-circle helpers shared by the route optimizer and the driver session."""
from __future__ import annotations

import math
from typing import Any

R_EARTH_KM = 6371.0


def to_rad(d: float) -> float:
    return d * math.pi / 180.0


def distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in kilometres.

    NaN inputs propagate as NaN; callers are expected to filter them.
    """
    dlat = to_rad(lat2 - lat1)
    dlon = to_rad(lon2 - lon1)
    s = (
        math.sin(dlat / 2) ** 2
        + math.cos(to_rad(lat1)) * math.cos(to_rad(lat2)) * math.sin(dlon / 2) ** 2
    )
    return 2 * R_EARTH_KM * math.atan2(math.sqrt(s), math.sqrt(1 - s))


def has_valid_coordinates(lat: Any, lon: Any) -> bool:
    if lat is None or lon is None or isinstance(lat, bool) or isinstance(lon, bool):
        return False
    try:
        lat_f = float(lat)
        lon_f = float(lon)
    except (TypeError, ValueError):
        return False
    if not (math.isfinite(lat_f) and math.isfinite(lon_f)):
        return False
    return -90.0 <= lat_f <= 90.0 and -180.0 <= lon_f <= 180.0


__all__ = ["R_EARTH_KM", "distance", "has_valid_coordinates", "to_rad"]
