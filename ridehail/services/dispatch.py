"""
Dispatch & Matching
Quotes and creates rides, exposes pending rides to eligible drivers and
arbitrates acceptance through the state machine.

When nobody is eligible at request time a pending-ride search polls the
driver pool until someone shows up, the ride leaves pending, or the
search times out and the ride is cancelled by the system.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from bson import ObjectId
from pydantic import BaseModel

from ridehail.config import Settings
from ridehail.errors import (
    CategoryNotFound,
    DriverNotEligible,
    PreconditionFailed,
    TransientStoreError,
)
from ridehail.models.category_model import VehicleCategory
from ridehail.models.driver_model import Driver
from ridehail.models.ride_model import ActiveRide, CategorySnapshot, Place, RideRecord, RideRejection
from ridehail.models.user_model import User
from ridehail.services.authorization import SYSTEM_ACTOR, Actor
from ridehail.services.notifications import Notifier
from ridehail.services.presence import PresenceTracker
from ridehail.services.pricing import CategoryPricing, is_peak_hour, safe_price
from ridehail.services.retry import with_retries
from ridehail.services.ride_store import RideQuery, RideStore, store_errors
from ridehail.services.state_machine import RideStateMachine
from ridehail.services.subscriptions import Subscription
from ridehail.utils.helpers import Coordinates, utcnow
from ridehail.utils.maps_utils import get_route_estimate
from ridehail.utils.weather_utils import is_raining

logger = logging.getLogger(__name__)

NO_DRIVER_FOUND = "no_driver_found"
REJECTED_BY_DRIVER = "rejected_by_driver"


class PriceQuote(BaseModel):
    category_id: str
    category_name: Optional[str] = None
    price: float
    distance_m: float
    duration_s: int
    distance_km: float
    duration_minutes: int
    is_peak: bool = False
    is_raining: bool = False
    route_source: str = "routes_api"


class DispatchService:
    def __init__(
        self,
        store: RideStore,
        state_machine: RideStateMachine,
        presence: PresenceTracker,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        route_estimator=get_route_estimate,
        weather=is_raining,
    ):
        self.store = store
        self.state_machine = state_machine
        self.presence = presence
        self.notifier = notifier
        self.settings = settings
        self.clock = clock
        self.route_estimator = route_estimator
        self.weather = weather
        self._searches: Dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Categories & pricing
    # -------------------------------------------------------------------------

    def local_now(self, now: Optional[datetime] = None) -> datetime:
        """Wall-clock time in the pricing timezone, used for peak windows"""
        now = now or self.clock()
        try:
            tz = ZoneInfo(self.settings.pricing_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown PRICING_TIMEZONE {self.settings.pricing_timezone}, using UTC")
            tz = timezone.utc
        return now.replace(tzinfo=timezone.utc).astimezone(tz)

    async def list_categories(self) -> List[VehicleCategory]:
        with store_errors("list categories"):
            return list(VehicleCategory.objects(is_active=True).order_by("base_price"))

    async def get_category(self, category_id: str) -> VehicleCategory:
        with store_errors("read category"):
            category = VehicleCategory.objects(pk=category_id, is_active=True).first()
        if category is None:
            raise CategoryNotFound(category_id=category_id)
        return category

    async def quote(
        self,
        origin: Coordinates,
        destination: Coordinates,
        category_id: str,
        now: Optional[datetime] = None,
        raining: Optional[bool] = None,
    ) -> PriceQuote:
        category = await self.get_category(category_id)
        return await self._quote_for(category, origin, destination, now, raining)

    async def _quote_for(
        self,
        category: VehicleCategory,
        origin: Coordinates,
        destination: Coordinates,
        now: Optional[datetime] = None,
        raining: Optional[bool] = None,
    ) -> PriceQuote:
        route = await self.route_estimator(
            origin, destination, api_key=self.settings.google_maps_api_key
        )
        if raining is None:
            raining = await self.weather(origin, api_key=self.settings.openweather_api_key)

        local_now = self.local_now(now)
        price = safe_price(route.meters, route.seconds, category, local_now, raining)

        try:
            windows = CategoryPricing.from_source(category).dynamic_pricing.peak_hours
            peak = is_peak_hour(local_now, windows)
        except (TypeError, ValueError):
            peak = False

        return PriceQuote(
            category_id=category.category_id,
            category_name=category.name,
            price=price,
            distance_m=route.meters,
            duration_s=route.seconds,
            distance_km=route.distance_km,
            duration_minutes=route.duration_minutes,
            is_peak=peak,
            is_raining=raining,
            route_source=route.source,
        )

    # -------------------------------------------------------------------------
    # Ride creation
    # -------------------------------------------------------------------------

    async def request_ride(
        self,
        passenger: User,
        origin: Place,
        destination: Place,
        category_id: str,
        payment_method: str = "cash",
        notes: Optional[str] = None,
    ) -> ActiveRide:
        """
        Price and store a new pending ride, then surface it to drivers

        Returns:
            The stored ride. Drivers are notified right away when any are
            eligible; otherwise a pending-ride search is started.
        """
        category = await self.get_category(category_id)
        quote = await self._quote_for(category, origin.coordinates, destination.coordinates)

        # the id is fixed before the first insert so a retry cannot store a second ride
        ride = ActiveRide(
            id=ObjectId(),
            passenger_id=str(passenger.id),
            passenger_name=passenger.display_name,
            passenger_phone=passenger.phone,
            origin=origin,
            destination=destination,
            category=CategorySnapshot.from_category(category),
            price=quote.price,
            distance=quote.distance_m,
            duration=quote.duration_s,
            payment_method=payment_method,
            notes=notes,
            status="pending",
        )

        ride_id = await with_retries(
            lambda: self.store.create(ride),
            attempts=self.settings.store_retry_attempts,
            base_delay=self.settings.store_retry_base_delay,
            description="create ride",
        )
        logger.info(
            f"New ride request {ride_id} by {passenger.email}: "
            f"{quote.distance_km}km, {quote.duration_minutes}min, price {quote.price}"
        )

        try:
            drivers = await self.presence.eligible_drivers(
                near=origin.coordinates, radius_km=self.settings.match_radius_km
            )
        except TransientStoreError:
            drivers = []

        if drivers:
            self._notify_drivers(ride, drivers)
        else:
            logger.info(f"No eligible drivers for ride {ride_id}, starting search")
            self.start_search(ride_id, origin.coordinates)
        return ride

    # -------------------------------------------------------------------------
    # Pending-ride search
    # -------------------------------------------------------------------------

    def start_search(self, ride_id: str, origin: Coordinates) -> asyncio.Task:
        existing = self._searches.get(ride_id)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.get_running_loop().create_task(
            self._search(ride_id, origin), name=f"ride-search:{ride_id}"
        )
        self._searches[ride_id] = task

        def forget(done: asyncio.Task) -> None:
            if self._searches.get(ride_id) is done:
                del self._searches[ride_id]

        task.add_done_callback(forget)
        return task

    def stop_search(self, ride_id: str) -> bool:
        task = self._searches.pop(ride_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug(f"Search for ride {ride_id} stopped")
        return True

    def is_searching(self, ride_id: str) -> bool:
        task = self._searches.get(ride_id)
        return task is not None and not task.done()

    async def _search(self, ride_id: str, origin: Coordinates) -> str:
        """
        Poll the driver pool for a pending ride.

        Returns:
            "drivers_found", "ride_left_pending" or "timeout"
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.search_timeout_seconds

        while True:
            await asyncio.sleep(self.settings.search_interval_seconds)
            try:
                ride = await self.store.get(ride_id)
                if ride is None or ride.status != "pending":
                    return "ride_left_pending"

                drivers = await self.presence.eligible_drivers(
                    near=origin, radius_km=self.settings.match_radius_km
                )
            except TransientStoreError:
                # keep polling; the next tick retries
                drivers = []
                ride = None

            if drivers and ride is not None:
                logger.info(f"Search for ride {ride_id} found {len(drivers)} drivers")
                self._notify_drivers(ride, drivers)
                return "drivers_found"

            if loop.time() >= deadline:
                return await self._expire(ride_id)

    async def _expire(self, ride_id: str) -> str:
        logger.info(f"No driver found for ride {ride_id}, cancelling")
        try:
            await self.state_machine.cancel(ride_id, SYSTEM_ACTOR, reason=NO_DRIVER_FOUND)
        except PreconditionFailed:
            return "ride_left_pending"
        except Exception as e:
            logger.error(f"Failed to cancel expired ride {ride_id}: {str(e)}")
        return "timeout"

    async def shutdown(self) -> None:
        tasks = list(self._searches.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._searches.clear()
        logger.info(f"Dispatch stopped, {len(tasks)} searches cancelled")

    # -------------------------------------------------------------------------
    # Driver side
    # -------------------------------------------------------------------------

    async def available_rides(self, driver_id: str) -> List[ActiveRide]:
        """Pending, unassigned rides this driver has not declined"""
        query = await self._query_for(driver_id)
        return await self.store.query(query)

    async def watch_available_rides(self, driver_id: str, callback) -> Subscription:
        """Standing query; the callback receives the full ride list on each change"""
        query = await self._query_for(driver_id)
        return self.store.watch_query(query, callback)

    async def accept(self, ride_id: str, driver_id: str) -> RideRecord:
        ride = await self.state_machine.accept(ride_id, driver_id)
        self.stop_search(ride_id)
        return ride

    async def reject(
        self, ride_id: str, driver_id: str, reason: Optional[str] = None
    ) -> RideRecord:
        """
        Driver turns down a pending ride.

        per_driver: the ride stays pending for everyone else.
        cancel_ride: the whole ride is cancelled.
        """
        driver = await self._eligible_driver(driver_id, require_online=False)

        if self.settings.reject_policy == "cancel_ride":
            ride = await self.state_machine.cancel(
                ride_id,
                SYSTEM_ACTOR,
                reason=reason or REJECTED_BY_DRIVER,
                cancelled_by="driver",
                from_statuses=("pending",),
            )
            self.stop_search(ride_id)
            self._log_rejection(ride, driver_id, reason)
        else:
            ride, changed = await self.state_machine.decline(ride_id, driver.user_id)
            if changed:
                self._log_rejection(ride, driver_id, reason)
        return ride

    async def cancel(
        self, ride_id: str, actor: Actor, reason: Optional[str] = None
    ) -> RideRecord:
        ride = await self.state_machine.cancel(ride_id, actor, reason=reason)
        self.stop_search(ride_id)
        return ride

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _eligible_driver(self, driver_id: str, require_online: bool = True) -> Driver:
        driver = await self.presence.get_driver(driver_id)
        if driver is None:
            raise DriverNotEligible("Driver profile not found")
        if driver.status != "approved":
            raise DriverNotEligible(f"Driver account is {driver.status}")
        if require_online and not self.presence.is_eligible(driver):
            raise DriverNotEligible("Go online to see ride requests")
        return driver

    async def _query_for(self, driver_id: str) -> RideQuery:
        driver = await self._eligible_driver(driver_id)
        radius = self.settings.match_radius_km
        return RideQuery.pending_for_driver(
            driver_id,
            near=driver.coordinates if radius is not None else None,
            radius_km=radius,
        )

    def _notify_drivers(self, ride: RideRecord, drivers: List[Driver]) -> None:
        body = f"{ride.origin.address} to {ride.destination.address}, {ride.price:.2f}"
        for driver in drivers:
            if driver.user_id in (ride.declined_by or []):
                continue
            self.notifier.notify(
                driver.user_id,
                "New ride request",
                body,
                {"type": "new_ride", "ride_id": ride.ride_id, "price": ride.price},
            )

    def _log_rejection(self, ride: RideRecord, driver_id: str, reason: Optional[str]) -> None:
        try:
            RideRejection(
                ride_id=ride.ride_id,
                driver_id=driver_id,
                reason=reason,
                ride_snapshot=json.dumps(ride.to_dict()),
            ).save()
        except Exception as e:
            logger.error(f"Failed to log rejection of ride {ride.ride_id}: {str(e)}")
