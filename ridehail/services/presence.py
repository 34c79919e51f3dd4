"""
Presence Tracker
Driver online/offline flag and latest location, plus the freshness rule
used by matching and by the passengers' nearby-drivers view.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from mongoengine import Q

from ridehail.config import Settings
from ridehail.errors import DriverNotEligible, TransientStoreError
from ridehail.models.driver_model import Driver
from ridehail.services.ride_store import store_errors
from ridehail.utils.helpers import Coordinates, haversine_meters, to_geojson_point, utcnow

logger = logging.getLogger(__name__)


class PresenceTracker:
    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.clock = clock

    @property
    def freshness_window(self) -> timedelta:
        return timedelta(minutes=self.settings.presence_freshness_minutes)

    @property
    def min_interval(self) -> timedelta:
        return timedelta(seconds=self.settings.presence_min_interval_seconds)

    async def get_driver(self, driver_id: str) -> Optional[Driver]:
        with store_errors("read driver"):
            return Driver.objects(pk=driver_id).first()

    async def go_online(self, driver_id: str, coords: Coordinates) -> Driver:
        now = self.clock()
        with store_errors("set driver online"):
            updated = Driver.objects(pk=driver_id).update_one(
                set__is_online=True,
                set__current_location=to_geojson_point(coords),
                set__last_update=now,
            )
            if not updated:
                raise DriverNotEligible("Driver profile not found")
            driver = Driver.objects(pk=driver_id).first()

        logger.info(f"Driver {driver_id} online at [{coords[0]}, {coords[1]}]")
        return driver

    async def go_offline(self, driver_id: str) -> bool:
        """Idempotent; returns True when the flag actually flipped"""
        with store_errors("set driver offline"):
            updated = Driver.objects(pk=driver_id, is_online=True).update_one(
                set__is_online=False
            )
        if updated:
            logger.info(f"Driver {driver_id} offline")
        return bool(updated)

    async def report_location(self, driver_id: str, coords: Coordinates) -> bool:
        """
        Store the latest location sample of an online driver.

        Returns False without writing when the driver is offline or the
        previous sample is younger than the minimum interval. Store failures
        are logged and also return False; the next tick retries.
        """
        now = self.clock()
        cutoff = now - self.min_interval
        try:
            with store_errors("report driver location"):
                updated = Driver.objects(
                    Q(last_update=None) | Q(last_update__lte=cutoff),
                    pk=driver_id,
                    is_online=True,
                ).update_one(
                    set__current_location=to_geojson_point(coords),
                    set__last_update=now,
                )
        except TransientStoreError as e:
            logger.warning(f"Location update for driver {driver_id} dropped: {e.message}")
            return False

        if not updated:
            logger.debug(f"Throttled or offline location update from {driver_id}")
        return bool(updated)

    def is_fresh(self, driver: Driver, now: Optional[datetime] = None) -> bool:
        if driver.last_update is None:
            return False
        now = now or self.clock()
        return now - driver.last_update <= self.freshness_window

    def is_eligible(self, driver: Driver, now: Optional[datetime] = None) -> bool:
        return (
            driver.status == "approved"
            and bool(driver.is_online)
            and self.is_fresh(driver, now)
        )

    async def eligible_drivers(
        self,
        near: Optional[Coordinates] = None,
        radius_km: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> List[Driver]:
        """
        Approved, online drivers with a fresh location sample.
        Sorted closest first when `near` is given; `radius_km` filters by distance.
        """
        now = now or self.clock()
        with store_errors("query online drivers"):
            drivers = list(
                Driver.objects(
                    status="approved",
                    is_online=True,
                    last_update__gte=now - self.freshness_window,
                )
            )

        if near is None:
            return drivers

        ranked = []
        for driver in drivers:
            coords = driver.coordinates
            if coords is None:
                continue
            distance_km = haversine_meters(near, coords) / 1000
            if radius_km is not None and distance_km > radius_km:
                continue
            ranked.append((distance_km, driver))

        ranked.sort(key=lambda item: item[0])
        return [driver for _, driver in ranked]

    async def nearby_drivers(
        self, coords: Coordinates, radius_km: float = 5.0, limit: int = 10
    ) -> List[dict]:
        """Passenger map view: closest fresh drivers with their distance"""
        drivers = await self.eligible_drivers(near=coords, radius_km=radius_km)
        results = []
        for driver in drivers[:limit]:
            data = driver.to_dict()
            data.pop("phone", None)
            data["distance_km"] = round(haversine_meters(coords, driver.coordinates) / 1000, 2)
            results.append(data)
        return results
