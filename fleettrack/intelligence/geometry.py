"""
Geometry helpers
Coordinate validation, great-circle distance, implied speed/acceleration and geofence checks
"""

import math
from datetime import datetime
from typing import Iterable, Optional, Tuple

EARTH_RADIUS_KM = 6371.0


def is_valid_coordinate(lat: float, lon: float) -> bool:
    return (math.isfinite(lat) and math.isfinite(lon) and
            -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0)


def check_coordinate(lat: float, lon: float):
    if not is_valid_coordinate(lat, lon):
        raise ValueError(f"invalid coordinate ({lat}, {lon})")


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_km(lat1, lon1, lat2, lon2) * 1000


def elapsed_seconds(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds()


def implied_speed_kmh(distance_km: float, seconds: float) -> Optional[float]:
    if seconds <= 0:
        return None
    return distance_km / seconds * 3600


def implied_acceleration_ms2(prev_speed_kmh: float, speed_kmh: float, seconds: float) -> Optional[float]:
    if seconds <= 0:
        return None
    return (speed_kmh - prev_speed_kmh) / 3.6 / seconds


def is_within_radius_km(lat: float, lon: float, center_lat: float, center_lon: float,
                        radius_km: float) -> bool:
    return haversine_km(lat, lon, center_lat, center_lon) <= radius_km


def centroid(coords: Iterable[Tuple[float, float]]) -> Tuple[float, float]:
    coords = list(coords)
    if not coords:
        raise ValueError("centroid of an empty set")
    lat = sum(c[0] for c in coords) / len(coords)
    lon = sum(c[1] for c in coords) / len(coords)
    return lat, lon
