"""
Weather Utilities
Answers "is it raining at the pickup point?" for dynamic pricing.
Defaults to False whenever the weather provider is unavailable.
"""

import logging
from typing import Optional

import httpx

from ridehail.utils.helpers import Coordinates

logger = logging.getLogger(__name__)

CURRENT_WEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"
REQUEST_TIMEOUT_SECONDS = 5.0
RAIN_CONDITIONS = {"Rain", "Drizzle", "Thunderstorm"}


async def is_raining(
    coords: Coordinates,
    api_key: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """
    Check current precipitation at a coordinate using OpenWeatherMap

    Returns:
        True when the provider reports rain, False otherwise or on any failure
    """
    if not api_key:
        return False

    params = {"lat": coords[0], "lon": coords[1], "appid": api_key}

    try:
        if client is None:
            async with httpx.AsyncClient() as own_client:
                response = await own_client.get(
                    CURRENT_WEATHER_URL, params=params, timeout=REQUEST_TIMEOUT_SECONDS
                )
        else:
            response = await client.get(
                CURRENT_WEATHER_URL, params=params, timeout=REQUEST_TIMEOUT_SECONDS
            )
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Weather lookup failed, assuming no rain: {str(e)}")
        return False

    if not isinstance(data, dict):
        logger.warning(f"Unexpected weather payload, assuming no rain: {data!r}")
        return False

    if data.get("rain"):
        return True

    weather = data.get("weather")
    if not isinstance(weather, list):
        return False
    conditions = {w.get("main") for w in weather if isinstance(w, dict)}
    return bool(conditions & RAIN_CONDITIONS)
