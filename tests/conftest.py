from datetime import datetime

import mongomock
import pytest

from ridehail.config import Settings
from ridehail.database import connect_db, disconnect_db
from ridehail.models.category_model import DynamicPricing, PeakHour, VehicleCategory
from ridehail.models.driver_model import Driver, Vehicle
from ridehail.models.ride_model import Place
from ridehail.models.user_model import User
from ridehail.services import build_services
from ridehail.utils.helpers import to_geojson_point
from ridehail.utils.maps_utils import RouteEstimate

TEST_DB = "ridehail_test"

PICKUP = (-23.5503, -46.6339)
DROPOFF = (-23.5614, -46.6559)


def pickup() -> Place:
    return Place(place="Praça da Sé", address="Praça da Sé, São Paulo", latitude=PICKUP[0], longitude=PICKUP[1])


def dropoff() -> Place:
    return Place(place="Paulista", address="Av. Paulista 1000, São Paulo", latitude=DROPOFF[0], longitude=DROPOFF[1])


# 12:00 UTC, outside both default peak windows
NOON = datetime(2024, 5, 14, 12, 0)


async def five_km_route(origin, destination, api_key=None):
    return RouteEstimate(meters=5000, seconds=600)


async def no_rain(coords, api_key=None):
    return False


def make_settings(**overrides) -> Settings:
    values = dict(
        mongo_uri="mongodb://localhost",
        mongo_db=TEST_DB,
        store_retry_base_delay=0.0,
        search_interval_seconds=0.01,
        search_timeout_seconds=0.05,
        seed_default_categories=False,
        log_level="DEBUG",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def db():
    connection = connect_db(make_settings(), mongo_client_class=mongomock.MongoClient)
    yield connection
    connection.drop_database(TEST_DB)
    disconnect_db()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def services(settings):
    services = build_services(
        settings, clock=lambda: NOON, route_estimator=five_km_route, weather=no_rain
    )
    yield services
    await services.shutdown()


@pytest.fixture
def category():
    return make_category()


def make_category(category_id="economico", **overrides):
    values = dict(
        category_id=category_id,
        name="Econômico",
        base_price=8.0,
        price_per_km=2.0,
        price_per_minute=0.0,
        min_distance=3.0,
        min_price=8.0,
        dynamic_pricing=DynamicPricing(
            rain_multiplier=1.2,
            peak_hours_multiplier=1.5,
            peak_hours=[PeakHour(start="07:00", end="09:00"), PeakHour(start="17:00", end="19:00")],
        ),
    )
    values.update(overrides)
    return VehicleCategory(**values).save()


def make_user(name="Ana Souza", role="passenger", email=None, phone=None) -> User:
    slug = name.lower().replace(" ", ".")
    return User(
        full_name=name,
        email=email or f"{slug}@example.com",
        phone=phone,
        role=role,
        password_hash="not-a-real-hash",
    ).save()


def make_driver(
    name="Carlos Lima",
    status="approved",
    online=True,
    coords=(-23.5505, -46.6333),
    last_update=None,
    vehicle=None,
) -> Driver:
    user = make_user(name, role="driver")
    driver = Driver(
        user_id=str(user.id),
        name=name,
        phone="11999990000",
        status=status,
        vehicle=vehicle or Vehicle(model="Onix", plate="abc1d23", color="Prata"),
        is_online=online,
        current_location=to_geojson_point(coords) if coords else None,
        last_update=last_update or (NOON if online else None),
    )
    driver.save()
    return driver


@pytest.fixture
def passenger():
    return make_user()


@pytest.fixture
def driver():
    return make_driver()


async def request_ride(services, passenger, category_id="economico"):
    return await services.dispatch.request_ride(passenger, pickup(), dropoff(), category_id)
