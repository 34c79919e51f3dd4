"""
Helper Utilities
Common utility functions used across the application
"""

import math
from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple

Coordinates = Tuple[float, float]  # (latitude, longitude)

EARTH_RADIUS_KM = 6371.0


def utcnow() -> datetime:
    """Naive UTC timestamp, the form MongoDB round-trips"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def haversine_meters(origin: Coordinates, destination: Coordinates) -> float:
    """
    Calculate distance between two coordinates using Haversine formula

    Args:
        origin: (latitude, longitude) of the first point
        destination: (latitude, longitude) of the second point

    Returns:
        Distance in meters
    """
    lat1, lon1 = origin
    lat2, lon2 = destination

    # Convert degrees to radians
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    # Haversine formula
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c * 1000


def validate_coordinates(latitude: float, longitude: float) -> Tuple[bool, str]:
    """
    Validate latitude and longitude coordinates

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False, "Invalid coordinate format"

    if not (-90 <= lat <= 90):
        return False, "Latitude must be between -90 and 90"

    if not (-180 <= lon <= 180):
        return False, "Longitude must be between -180 and 180"

    return True, ""


def to_geojson_point(coords: Coordinates) -> dict:
    # GeoJSON is [longitude, latitude]
    return {"type": "Point", "coordinates": [coords[1], coords[0]]}


def from_geojson_point(point) -> Optional[Coordinates]:
    if not point:
        return None
    coordinates: Sequence[float] = (
        point.get("coordinates") if isinstance(point, dict) else point
    )
    if not coordinates or len(coordinates) < 2:
        return None
    return (coordinates[1], coordinates[0])


def get_ride_status_message(status: str, driver_arrived: bool = False) -> str:
    """
    Get user-friendly message for ride status
    """
    if status == "accepted" and driver_arrived:
        return "Your driver has arrived at the pickup point"

    messages = {
        "pending": "Looking for a driver...",
        "accepted": "Driver is on the way to pick you up",
        "in_progress": "Ride in progress",
        "completed": "Ride completed successfully",
        "cancelled": "Ride was cancelled",
    }

    return messages.get(status, "Unknown status")


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
