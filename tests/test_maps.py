import json

import httpx
import pytest

from ridehail.utils.maps_utils import (
    ROUTE_MATRIX_URL,
    fallback_route_estimate,
    get_route_estimate,
)
from ridehail.utils.weather_utils import is_raining

ORIGIN = (-23.5503, -46.6339)
DESTINATION = (-23.5614, -46.6559)


def client_for(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_routes_api_response():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers["X-Goog-Api-Key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=[{"originIndex": 0, "destinationIndex": 0, "distanceMeters": 5230, "duration": "845s"}],
        )

    async with client_for(handler) as client:
        route = await get_route_estimate(ORIGIN, DESTINATION, api_key="k", client=client)

    assert route.meters == 5230
    assert route.seconds == 845
    assert route.source == "routes_api"
    assert route.distance_km == 5.23
    assert route.duration_minutes == 15
    assert seen["url"] == ROUTE_MATRIX_URL
    assert seen["key"] == "k"
    assert seen["body"]["origins"][0]["location"]["latLng"]["latitude"] == ORIGIN[0]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="backend error"),
        httpx.Response(200, json=[]),
        httpx.Response(200, json=[{"condition": "ROUTE_NOT_FOUND"}]),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json="quota exceeded"),
        httpx.Response(200, json=[None]),
        httpx.Response(200, json=["x"]),
        httpx.Response(200, json={"rows": "nope"}),
    ],
)
async def test_provider_failures_fall_back_to_haversine(response):
    async with client_for(lambda request: response) as client:
        route = await get_route_estimate(ORIGIN, DESTINATION, api_key="k", client=client)

    assert route.source == "haversine"
    assert route.meters == pytest.approx(fallback_route_estimate(ORIGIN, DESTINATION).meters)


async def test_no_api_key_uses_fallback():
    route = await get_route_estimate(ORIGIN, DESTINATION)
    assert route.source == "haversine"
    # ~2.6 km straight line at 30 km/h
    assert 2000 < route.meters < 3000
    assert route.seconds == round(route.meters / (30 * 1000 / 3600))


async def test_rain_detection():
    def rainy(request):
        assert request.url.params["appid"] == "w"
        return httpx.Response(200, json={"weather": [{"main": "Drizzle"}]})

    async with client_for(rainy) as client:
        assert await is_raining(ORIGIN, api_key="w", client=client) is True

    async with client_for(lambda r: httpx.Response(200, json={"weather": [{"main": "Clear"}]})) as client:
        assert await is_raining(ORIGIN, api_key="w", client=client) is False

    async with client_for(lambda r: httpx.Response(503)) as client:
        assert await is_raining(ORIGIN, api_key="w", client=client) is False

    assert await is_raining(ORIGIN) is False


@pytest.mark.parametrize("body", ["quota exceeded", [None], ["x"], {"weather": "Rain"}])
async def test_unexpected_weather_payload_means_no_rain(body):
    async with client_for(lambda r: httpx.Response(200, json=body)) as client:
        assert await is_raining(ORIGIN, api_key="w", client=client) is False
