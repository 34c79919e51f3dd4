"""
Ride Record Store
MongoDB-backed adapter for live and historical ride records.

Every lifecycle write goes through conditional_update(), a single atomic
update_one whose filter carries the expected state (compare-and-swap).
Writes publish snapshots to the subscription hub so watchers of a ride and
standing queries over live rides are notified.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Type

from bson import ObjectId
from mongoengine.errors import NotUniqueError
from pymongo.errors import ConnectionFailure, ExecutionTimeout, WTimeoutError

from ridehail.errors import (
    InvalidTransition,
    PermissionDenied,
    RideNotFound,
    TransientStoreError,
)
from ridehail.models.ride_model import (
    ActiveRide,
    CancelledRide,
    CompletedRide,
    HISTORY_MODELS,
    RideRecord,
)
from ridehail.services.authorization import Actor, check_ride_read
from ridehail.services.subscriptions import Subscription, SubscriptionHub
from ridehail.utils.helpers import Coordinates, haversine_meters, utcnow

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (ConnectionFailure, ExecutionTimeout, WTimeoutError)

ACTIVE_RIDES_TOPIC = "rides:active"


def ride_topic(ride_id: str) -> str:
    return f"ride:{ride_id}"


@contextmanager
def store_errors(description: str):
    """Map driver-level network/timeout failures to TransientStoreError"""
    try:
        yield
    except TRANSIENT_ERRORS as e:
        logger.warning(f"Transient store error during {description}: {str(e)}")
        raise TransientStoreError(f"Failed to {description}") from e


class RideSnapshot(NamedTuple):
    """What ride watchers receive; ride is None once it left the live store"""

    ride_id: str
    ride: Optional[Dict[str, Any]]
    location: Optional[str]  # "active", "completed", "cancelled" or None
    record: Optional[RideRecord] = None  # document behind `ride`, for read checks
    revoked: bool = False  # last snapshot of a watch whose actor lost read access


@dataclass(frozen=True)
class RideQuery:
    statuses: Tuple[str, ...] = ()
    passenger_id: Optional[str] = None
    driver_id: Optional[str] = None
    unassigned: bool = False
    exclude_declined_by: Optional[str] = None
    near: Optional[Coordinates] = None
    radius_km: Optional[float] = None  # applied to the ride origin when near is set
    limit: Optional[int] = None

    @classmethod
    def pending_for_driver(
        cls,
        driver_id: str,
        near: Optional[Coordinates] = None,
        radius_km: Optional[float] = None,
    ) -> "RideQuery":
        """Rides a driver may still claim"""
        return cls(
            statuses=("pending",),
            unassigned=True,
            exclude_declined_by=driver_id,
            near=near,
            radius_km=radius_km,
        )

    def within_radius(self, ride: RideRecord) -> bool:
        if self.near is None or self.radius_km is None or ride.origin is None:
            return True
        return haversine_meters(self.near, ride.origin.coordinates) / 1000 <= self.radius_km

    def filters(self) -> Dict[str, Any]:
        filters: Dict[str, Any] = {}
        if self.statuses:
            filters["status__in"] = list(self.statuses)
        if self.passenger_id:
            filters["passenger_id"] = self.passenger_id
        if self.unassigned:
            filters["driver_id"] = None
        elif self.driver_id:
            filters["driver_id"] = self.driver_id
        if self.exclude_declined_by:
            filters["declined_by__nin"] = [self.exclude_declined_by]
        return filters


def _valid_id(ride_id: str) -> bool:
    return bool(ride_id) and ObjectId.is_valid(str(ride_id))


class RideStore:
    """Live/historical ride collections plus change subscriptions"""

    def __init__(self, hub: Optional[SubscriptionHub] = None):
        self.hub = hub or SubscriptionHub()

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    async def create(self, ride: ActiveRide) -> str:
        """Insert a new live ride; the id is fixed up front so a retried insert is a no-op"""
        if ride.id is None:
            ride.id = ObjectId()
        try:
            with store_errors("create ride"):
                ride.save(force_insert=True)
        except NotUniqueError:
            # an earlier attempt landed but its acknowledgement was lost
            with store_errors("read ride"):
                stored = ActiveRide.objects(pk=ride.id).first()
            if stored is None:
                raise
            ride = stored
        logger.info(f"Ride {ride.id} stored in active_rides")
        self._publish(str(ride.id), ride, "active")
        return str(ride.id)

    async def get(self, ride_id: str) -> Optional[ActiveRide]:
        if not _valid_id(ride_id):
            return None
        with store_errors("read ride"):
            return ActiveRide.objects(pk=ride_id).first()

    async def get_history(self, ride_id: str, status: str) -> Optional[RideRecord]:
        if not _valid_id(ride_id):
            return None
        with store_errors("read ride history"):
            return HISTORY_MODELS[status].objects(pk=ride_id).first()

    async def locate(self, ride_id: str) -> Tuple[Optional[RideRecord], Optional[str]]:
        """Find a ride in the live store, then in the historical stores"""
        with store_errors("locate ride"):
            return self._locate_sync(ride_id)

    async def delete(self, ride_id: str) -> bool:
        if not _valid_id(ride_id):
            return False
        with store_errors("delete ride"):
            deleted = ActiveRide.objects(pk=ride_id).delete()
        if deleted:
            self._publish(ride_id, None, None)
        return bool(deleted)

    async def conditional_update(
        self,
        ride_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
        model: Type[RideRecord] = ActiveRide,
    ) -> Optional[RideRecord]:
        """
        Apply `changes` only if the ride currently matches `expected`.

        Args:
            ride_id: Ride id
            expected: mongoengine filter kwargs describing the required state
            changes: mongoengine update kwargs (set__status=..., add_to_set__...)
            model: Collection to write (live store by default)

        Returns:
            The reloaded ride, or None when the precondition did not hold
        """
        if not _valid_id(ride_id):
            return None

        changes = dict(changes)
        changes.setdefault("set__updated_at", utcnow())

        with store_errors("update ride"):
            matched = model.objects(pk=ride_id, **expected).update_one(**changes)
            if not matched:
                return None
            ride = model.objects(pk=ride_id).first()

        if model is ActiveRide and ride is not None:
            self._publish(ride_id, ride, "active")
        return ride

    async def relocate(self, ride_id: str, status: str) -> RideRecord:
        """
        Move a terminal ride into its historical collection under the same id.
        Safe to call again after a partial failure.
        """
        model = HISTORY_MODELS[status]

        with store_errors("relocate ride"):
            live = ActiveRide.objects(pk=ride_id).first()
            if live is None:
                existing = model.objects(pk=ride_id).first()
                if existing is not None:
                    return existing
                raise RideNotFound()

            if live.status != status:
                raise InvalidTransition(
                    f"Cannot move a {live.status} ride into {status} history"
                )

            history = model(**{name: live[name] for name in live._fields})
            try:
                history.save(force_insert=True)
            except NotUniqueError:
                logger.info(f"Ride {ride_id} already present in {status} history")
                history = model.objects(pk=ride_id).first()

            live.delete()

        logger.info(f"Ride {ride_id} relocated to {model._meta['collection']}")
        self._publish(ride_id, None, status)
        return history

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def query(self, query: RideQuery) -> List[ActiveRide]:
        with store_errors("query rides"):
            return self._query_sync(query)

    async def history_for(
        self, user_id: str, role: str, status: Optional[str] = None
    ) -> List[RideRecord]:
        """Terminal rides of a passenger or driver, newest first"""
        if role == "driver":
            # cancelled rides release driver_id but keep the snapshot
            filters = {"driver__driver_id": user_id}
        else:
            filters = {"passenger_id": user_id}

        statuses = [status] if status else list(HISTORY_MODELS)
        rides: List[RideRecord] = []
        with store_errors("read ride history"):
            for name in statuses:
                rides.extend(HISTORY_MODELS[name].objects(**filters))
        rides.sort(key=lambda r: r.created_at, reverse=True)
        return rides

    async def counts(self) -> Dict[str, int]:
        with store_errors("count rides"):
            return {
                "pending": ActiveRide.objects(status="pending").count(),
                "active": ActiveRide.objects(
                    status__in=["accepted", "in_progress"]
                ).count(),
                "completed": CompletedRide.objects.count(),
                "cancelled": CancelledRide.objects.count(),
            }

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def watch_ride(self, ride_id: str, callback, actor: Optional[Actor] = None) -> Subscription:
        """
        Current snapshot first, then one RideSnapshot per change.

        With an actor, read access is checked on every snapshot. Once it
        fails the watcher gets one `revoked` snapshot without ride data and
        the subscription is cancelled.
        """
        if actor is None:
            return self.hub.subscribe(
                ride_topic(ride_id), callback, loader=lambda: self._snapshot_sync(ride_id)
            )

        subscription: Optional[Subscription] = None

        async def deliver(snapshot: RideSnapshot) -> None:
            if snapshot.record is not None:
                try:
                    check_ride_read(actor, snapshot.record)
                except PermissionDenied:
                    logger.info(f"Ride {ride_id} no longer readable by {actor.user_id}")
                    subscription.cancel()
                    await callback(RideSnapshot(ride_id, None, None, revoked=True))
                    return
            await callback(snapshot)

        subscription = self.hub.subscribe(
            ride_topic(ride_id), deliver, loader=lambda: self._snapshot_sync(ride_id)
        )
        return subscription

    def watch_query(self, query: RideQuery, callback) -> Subscription:
        """Re-delivers the full result list whenever a live ride changes"""
        return self.hub.subscribe(
            ACTIVE_RIDES_TOPIC,
            callback,
            loader=lambda: [ride.to_dict() for ride in self._query_sync(query)],
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _publish(self, ride_id: str, ride: Optional[RideRecord], location: Optional[str]):
        self.hub.publish(
            ride_topic(ride_id),
            RideSnapshot(
                ride_id, ride.to_dict() if ride is not None else None, location, record=ride
            ),
        )
        self.hub.refresh(ACTIVE_RIDES_TOPIC)

    def _query_sync(self, query: RideQuery) -> List[ActiveRide]:
        rides = ActiveRide.objects(**query.filters()).order_by("-created_at")
        rides = [ride for ride in rides if query.within_radius(ride)]
        if query.limit:
            rides = rides[: query.limit]
        return rides

    def _locate_sync(self, ride_id: str) -> Tuple[Optional[RideRecord], Optional[str]]:
        if not _valid_id(ride_id):
            return None, None
        ride = ActiveRide.objects(pk=ride_id).first()
        if ride is not None:
            return ride, "active"
        for status, model in HISTORY_MODELS.items():
            ride = model.objects(pk=ride_id).first()
            if ride is not None:
                return ride, status
        return None, None

    def _snapshot_sync(self, ride_id: str) -> RideSnapshot:
        ride, location = self._locate_sync(ride_id)
        if location != "active":
            return RideSnapshot(ride_id, None, location)
        return RideSnapshot(ride_id, ride.to_dict(), location, record=ride)
