"""
Geographic arithmetic for tracking, routing and geofencing.

Pure functions over anything exposing ``latitude`` and ``longitude``.
"""

import math
from typing import Tuple

from backend.app.models.dispatch_enums import TravelMode

# Radius of Earth in kilometers
EARTH_RADIUS_KM = 6371.0

# Average speed per travel mode, km/h
TRAVEL_SPEED_KMH = {
    TravelMode.WALKING: 5.0,
    TravelMode.DRIVING: 50.0,
    TravelMode.EMERGENCY: 80.0,
}


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in kilometers
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)

    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def distance_km(a, b) -> float:
    """Great-circle distance between two positions, in kilometers."""
    return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)


def eta_minutes(distance: float, speed_kmh: float = None, mode: TravelMode = TravelMode.DRIVING) -> float:
    """
    Travel time in minutes for a distance in kilometers.

    Falls back to the average speed of the travel mode (50 km/h when
    driving) when the observed speed is missing or zero.
    """
    if not speed_kmh or speed_kmh <= 0:
        speed_kmh = TRAVEL_SPEED_KMH[TravelMode(mode)]
    return (distance / speed_kmh) * 60


def is_inside_zone(position, zone) -> bool:
    """True if position lies within the zone's radius (boundary included)."""
    return distance_km(position, zone.center) * 1000 <= zone.radius_meters


def bearing_degrees(a, b) -> float:
    """Initial compass bearing from a to b, in [0, 360)."""
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlon = math.radians(b.longitude - a.longitude)

    x = math.sin(dlon) * math.cos(lat2)
    y = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)

    return (math.degrees(math.atan2(x, y)) + 360) % 360


def speed_kmh_from_mps(speed_mps: float) -> float:
    if speed_mps is None:
        return 0.0
    return speed_mps * 3.6


def grid_cell(latitude: float, longitude: float, precision: int = 3) -> Tuple[float, float]:
    """
    Snap a coordinate to a grid cell.

    precision=3 gives cells of roughly 110 m, so nearby origins share a cache key.
    """
    return (round(latitude, precision), round(longitude, precision))


def format_distance(distance: float) -> str:
    """Human-readable distance: meters below 1 km, one decimal below 10 km."""
    if distance < 1:
        return f"{round(distance * 1000)}m"
    if distance < 10:
        return f"{distance:.1f}km"
    return f"{round(distance)}km"


def format_travel_time(minutes: float) -> str:
    minutes = int(round(minutes))
    if minutes < 60:
        return f"{minutes} min"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins > 0 else f"{hours}h"
