from __future__ import annotations

import math
from typing import Optional

from pydantic import BaseModel, ConfigDict

"""
Coordinates and great-circle distance helpers shared by the parser, the ranker
and the browse view.
"""

EARTH_RADIUS_MILES = 3958.8


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float


# Reference point when the user has not shared a location (Toronto City Hall).
DEFAULT_CENTER = Location(lat=43.6532, lng=-79.3832)


def coerce_coordinate(value: object, *, limit: float) -> Optional[float]:
    """
    Parse a latitude/longitude given as a number or numeric string.
    Returns None for missing, non-numeric, non-finite or out-of-range values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        v = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(v) or abs(v) > limit:
        return None
    return v


def distance_miles(a: Location, b: Location) -> float:
    """Haversine distance between two points, in miles."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    dlat = lat2 - lat1
    dlng = math.radians(b.lng - a.lng)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(h)))


def format_distance(miles: float) -> str:
    return f"{miles:.1f} mi"
