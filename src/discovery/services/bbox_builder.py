from __future__ import annotations

import math
from typing import Tuple


def expand_bbox_from_center(lon: float, lat: float, km: float) -> Tuple[float, float, float, float]:
    """Create a rectangular bbox around (lon,lat) by ±km in both axes.

    Returns (min_lon, min_lat, max_lon, max_lat), clamped to valid coordinates.
    """
    # degrees per km
    dlat = km / 110.574
    cos_lat = math.cos(math.radians(lat))
    dlon = km / (111.320 * cos_lat) if abs(cos_lat) > 1e-6 else 180.0
    min_lon = max(-180.0, lon - dlon)
    max_lon = min(180.0, lon + dlon)
    min_lat = max(-90.0, lat - dlat)
    max_lat = min(90.0, lat + dlat)
    return (min_lon, min_lat, max_lon, max_lat)
