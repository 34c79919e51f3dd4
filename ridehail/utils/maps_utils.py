"""
Google Maps Integration Utilities
Handles routed distance and duration using Google Routes API,
falling back to straight-line distance when the provider is unavailable
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import httpx

from ridehail.utils.helpers import Coordinates, haversine_meters

logger = logging.getLogger(__name__)

ROUTE_MATRIX_URL = "https://routes.googleapis.com/distanceMatrix/v2:computeRouteMatrix"
REQUEST_TIMEOUT_SECONDS = 10.0
FALLBACK_SPEED_KMH = 30.0  # average city traffic


@dataclass(frozen=True)
class RouteEstimate:
    meters: float
    seconds: int
    source: str = "routes_api"

    @property
    def distance_km(self) -> float:
        return round(self.meters / 1000, 2)

    @property
    def duration_minutes(self) -> int:
        return math.ceil(self.seconds / 60) if self.seconds > 0 else 0

    def to_dict(self) -> dict:
        return {
            "distance_meters": round(self.meters),
            "duration_seconds": self.seconds,
            "distance_km": self.distance_km,
            "duration_minutes": self.duration_minutes,
            "distance_text": f"{self.distance_km:.1f} km",
            "duration_text": f"{self.duration_minutes} mins",
            "source": self.source,
        }


def fallback_route_estimate(
    origin: Coordinates, destination: Coordinates
) -> RouteEstimate:
    """
    Fallback calculation using Haversine formula when Google Maps API is unavailable
    """
    meters = haversine_meters(origin, destination)
    seconds = round(meters / (FALLBACK_SPEED_KMH * 1000 / 3600))
    return RouteEstimate(meters=meters, seconds=seconds, source="haversine")


def _parse_duration(value) -> int:
    # Routes API encodes durations as "123s"
    if isinstance(value, (int, float)):
        return int(value)
    return int(float(str(value).rstrip("s") or 0))


async def get_route_estimate(
    origin: Coordinates,
    destination: Coordinates,
    api_key: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> RouteEstimate:
    """
    Get distance and duration using Google Routes API (Distance Matrix)

    Args:
        origin: Tuple of (latitude, longitude) for starting point
        destination: Tuple of (latitude, longitude) for ending point
        api_key: Google Maps API key; without one the fallback is used
        client: Optional shared HTTP client

    Returns:
        RouteEstimate in meters and seconds. Never raises for provider errors.
    """
    if not api_key:
        logger.debug("Google Maps API key not configured, using fallback calculation")
        return fallback_route_estimate(origin, destination)

    payload = {
        "origins": [
            {"location": {"latLng": {"latitude": origin[0], "longitude": origin[1]}}}
        ],
        "destinations": [
            {
                "location": {
                    "latLng": {
                        "latitude": destination[0],
                        "longitude": destination[1],
                    }
                }
            }
        ],
        "travelMode": "DRIVE",
        "routingPreference": "TRAFFIC_AWARE",
    }

    headers = {
        "Content-Type": "application/json",
        "X-Goog-Api-Key": api_key,
        "X-Goog-FieldMask": "originIndex,destinationIndex,distanceMeters,duration,condition",
    }

    try:
        if client is None:
            async with httpx.AsyncClient() as own_client:
                response = await own_client.post(
                    ROUTE_MATRIX_URL,
                    json=payload,
                    headers=headers,
                    timeout=REQUEST_TIMEOUT_SECONDS,
                )
        else:
            response = await client.post(
                ROUTE_MATRIX_URL,
                json=payload,
                headers=headers,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Error calling Google Routes API: {str(e)}")
        return fallback_route_estimate(origin, destination)

    # computeRouteMatrix answers with a list of elements
    if isinstance(data, list):
        elements = data
    elif isinstance(data, dict):
        elements = data.get("rows") or []
    else:
        elements = []
    if not isinstance(elements, list) or not elements:
        logger.error("Routes API returned no results")
        return fallback_route_estimate(origin, destination)

    element = elements[0]
    if not isinstance(element, dict):
        logger.error(f"Malformed Routes API element: {element!r}")
        return fallback_route_estimate(origin, destination)
    if element.get("condition", "ROUTE_EXISTS") != "ROUTE_EXISTS":
        logger.error(f"Route calculation failed: {element.get('condition')}")
        return fallback_route_estimate(origin, destination)

    try:
        meters = float(element.get("distanceMeters", 0))
        seconds = _parse_duration(element.get("duration", "0s"))
    except (TypeError, ValueError) as e:
        logger.error(f"Malformed Routes API element: {str(e)}")
        return fallback_route_estimate(origin, destination)

    return RouteEstimate(meters=meters, seconds=seconds)
