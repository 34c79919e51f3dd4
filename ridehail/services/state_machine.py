"""
Ride State Machine
pending → accepted (→ driver_arrived) → in_progress → completed,
or cancelled from pending/accepted.

Every transition is one conditional write on the ride record: the filter
carries the state the transition starts from, so a concurrent change makes
the write miss instead of overwriting it. Terminal rides are relocated to
their historical collection under the same id.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, Type, Union

from ridehail.config import Settings
from ridehail.errors import (
    DriverNotEligible,
    InvalidRequest,
    InvalidTransition,
    PermissionDenied,
    PreconditionFailed,
    ProfileIncompleteError,
    RideNotFound,
)
from ridehail.models.driver_model import Driver, Vehicle
from ridehail.models.ride_model import (
    CANCELLABLE_STATUSES,
    ActiveRide,
    CompletedRide,
    DriverSnapshot,
    PartyRating,
    RideRecord,
)
from ridehail.models.user_model import User
from ridehail.services.authorization import (
    Actor,
    assigned_driver_id,
    check_ride_read,
    check_ride_update,
    fields_of,
    party_of,
)
from ridehail.services.notifications import Notifier
from ridehail.services.ratings import aggregate_rating
from ridehail.services.retry import with_retries
from ridehail.services.ride_store import RideStore, store_errors
from ridehail.utils.helpers import Coordinates, utcnow

logger = logging.getLogger(__name__)

RECONCILE_OUTCOMES = ("completed", "cancelled")
MAX_COMMENT_LENGTH = 500

Expected = Union[Dict[str, Any], Callable[[RideRecord], Dict[str, Any]]]


def build_driver_snapshot(driver: Driver) -> DriverSnapshot:
    """Denormalized driver details copied onto the ride at accept time"""
    vehicle = driver.vehicle or Vehicle()
    coords = driver.coordinates
    return DriverSnapshot(
        driver_id=driver.user_id,
        name=driver.name,
        phone=driver.phone,
        rating=driver.rating,
        vehicle=Vehicle(
            model=(vehicle.model or "").strip(),
            plate=(vehicle.plate or "").strip().upper(),
            color=(vehicle.color or "").strip(),
        ),
        latitude=coords[0] if coords else None,
        longitude=coords[1] if coords else None,
    )


def validate_rating(rating: Any, comment: Optional[str]) -> Tuple[int, Optional[str]]:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise InvalidRequest("Rating must be an integer between 1 and 5", rating=rating)
    if comment is not None:
        comment = comment.strip() or None
    if comment and len(comment) > MAX_COMMENT_LENGTH:
        raise InvalidRequest(
            f"Comment must be at most {MAX_COMMENT_LENGTH} characters"
        )
    return rating, comment


class RideStateMachine:
    def __init__(
        self,
        store: RideStore,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_ride(self, ride_id: str, actor: Actor) -> Tuple[RideRecord, str]:
        """Live store first, then history; raises RideNotFound when absent from both"""
        ride, where = await self.store.locate(ride_id)
        if ride is None:
            raise RideNotFound(ride_id=ride_id)
        check_ride_read(actor, ride)
        return ride, where

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def accept(self, ride_id: str, driver_id: str) -> RideRecord:
        """
        Claim a pending ride for a driver.

        Raises:
            DriverNotEligible: driver record missing or not approved
            ProfileIncompleteError: vehicle model, plate or color missing
            PreconditionFailed: another driver won the race, the ride was
                cancelled, or this driver declined it earlier
        """
        driver = await self._load_driver(driver_id)
        if driver.status != "approved":
            raise DriverNotEligible(f"Driver account is {driver.status}")
        missing = (driver.vehicle or Vehicle()).missing_fields()
        if missing:
            raise ProfileIncompleteError(missing)

        now = self.clock()
        ride, changed = await self._transition(
            Actor(driver_id, "driver"),
            ride_id,
            action="accept",
            from_statuses=("pending",),
            expected={
                "status": "pending",
                "driver_id": None,
                "declined_by__nin": [driver_id],
            },
            changes={
                "set__status": "accepted",
                "set__driver_id": driver_id,
                "set__driver": build_driver_snapshot(driver),
                "set__accepted_at": now,
            },
            applied=lambda r: r.status == "accepted" and r.driver_id == driver_id,
            stale_error=PreconditionFailed,
        )

        if changed:
            logger.info(f"Ride {ride_id} accepted by driver {driver_id}")
            vehicle = ride.driver.vehicle
            self.notifier.notify(
                ride.passenger_id,
                "Driver found",
                f"{driver.name or 'Your driver'} is on the way"
                + (f" in a {vehicle.color} {vehicle.model} ({vehicle.plate})" if vehicle else ""),
                {"type": "ride_accepted", "ride_id": ride_id, "driver_id": driver_id},
            )
        return ride

    async def decline(self, ride_id: str, driver_id: str) -> Tuple[RideRecord, bool]:
        """
        Hide a pending ride from one driver; it stays pending for everyone else.

        Returns:
            (ride, changed). changed is False when the driver had already declined it.
        """
        ride, changed = await self._transition(
            Actor(driver_id, "driver"),
            ride_id,
            action="decline",
            from_statuses=("pending",),
            expected={"status": "pending", "driver_id": None},
            changes={"add_to_set__declined_by": driver_id},
            applied=lambda r: r.status == "pending" and driver_id in (r.declined_by or []),
            stale_error=PreconditionFailed,
        )
        if changed:
            logger.info(f"Driver {driver_id} declined ride {ride_id}")
        return ride, changed

    async def mark_arrived(self, ride_id: str, driver_id: str) -> RideRecord:
        """Set the arrival flag; a second call leaves arrived_at unchanged"""
        ride, changed = await self._transition(
            Actor(driver_id, "driver"),
            ride_id,
            action="mark arrival on",
            from_statuses=("accepted",),
            expected={"status": "accepted", "driver_id": driver_id, "driver_arrived": False},
            changes={"set__driver_arrived": True, "set__arrived_at": self.clock()},
            applied=lambda r: (
                r.status == "accepted" and r.driver_arrived and r.driver_id == driver_id
            ),
        )

        if changed:
            logger.info(f"Driver {driver_id} arrived for ride {ride_id}")
            self.notifier.notify(
                ride.passenger_id,
                "Driver arrived",
                "Your driver is waiting at the pickup point",
                {"type": "driver_arrived", "ride_id": ride_id},
            )
        return ride

    async def start(self, ride_id: str, driver_id: str) -> RideRecord:
        ride, changed = await self._transition(
            Actor(driver_id, "driver"),
            ride_id,
            action="start",
            from_statuses=("accepted",),
            expected={"status": "accepted", "driver_id": driver_id},
            changes={"set__status": "in_progress", "set__started_at": self.clock()},
            applied=lambda r: r.status == "in_progress" and r.driver_id == driver_id,
        )

        if changed:
            logger.info(f"Ride {ride_id} started")
            self.notifier.notify(
                ride.passenger_id,
                "Ride started",
                "Enjoy your trip",
                {"type": "ride_started", "ride_id": ride_id},
            )
        return ride

    async def complete(
        self,
        ride_id: str,
        driver_id: str,
        final_location: Optional[Coordinates] = None,
    ) -> RideRecord:
        """Finish an in-progress ride and move it to completed history"""
        changes = {
            "set__status": "completed",
            "set__completed_at": self.clock(),
            "set__completed_by": driver_id,
        }
        if final_location is not None:
            changes["set__final_location"] = [final_location[0], final_location[1]]

        ride, changed = await self._transition(
            Actor(driver_id, "driver"),
            ride_id,
            action="complete",
            from_statuses=("in_progress",),
            expected={"status": "in_progress", "driver_id": driver_id},
            changes=changes,
            applied=lambda r: r.status == "completed" and r.driver_id == driver_id,
        )
        history = await self._relocate(ride_id, "completed")

        if changed:
            logger.info(f"Ride {ride_id} completed by driver {driver_id}")
            await self._count_trip(driver_id)
            self.notifier.notify(
                ride.passenger_id,
                "Ride completed",
                f"You have arrived. Total: {ride.price:.2f}. Please rate your driver",
                {"type": "rate_ride", "ride_id": ride_id, "price": ride.price},
            )
        return history

    async def cancel(
        self,
        ride_id: str,
        actor: Actor,
        reason: Optional[str] = None,
        cancelled_by: Optional[str] = None,
        from_statuses: Tuple[str, ...] = CANCELLABLE_STATUSES,
    ) -> RideRecord:
        """
        Cancel a pending or accepted ride and move it to cancelled history.
        The driver snapshot stays on the record; driver_id is released.
        """

        def expected(ride: RideRecord) -> Dict[str, Any]:
            # a driver may only cancel while still assigned
            if actor.role == "driver" and not actor.is_admin:
                return {"status__in": list(from_statuses), "driver_id": actor.user_id}
            return {"status__in": list(from_statuses)}

        def changes(ride: RideRecord) -> Dict[str, Any]:
            return {
                "set__status": "cancelled",
                "set__driver_id": None,
                "set__cancelled_at": self.clock(),
                "set__cancelled_by": cancelled_by or party_of(actor, ride),
                "set__cancellation_reason": reason,
            }

        ride, changed = await self._transition(
            actor,
            ride_id,
            action="cancel",
            from_statuses=from_statuses,
            expected=expected,
            changes=changes,
            # cancelled but relocation did not finish
            applied=lambda r: r.status == "cancelled" and isinstance(r, ActiveRide),
        )
        history = await self._relocate(ride_id, "cancelled")

        if changed:
            logger.info(
                f"Ride {ride_id} cancelled by {ride.cancelled_by}"
                + (f": {reason}" if reason else "")
            )
            self._notify_cancellation(ride)
        return history

    async def rate_by_passenger(
        self, ride_id: str, passenger_id: str, rating: int, comment: Optional[str] = None
    ) -> RideRecord:
        """Passenger rates the driver; folds into the driver's average"""
        ride = await self._rate(
            Actor(passenger_id, "passenger"), ride_id, "passenger_rating", rating, comment
        )
        driver_id = assigned_driver_id(ride)
        if driver_id:
            await self._aggregate(Driver, driver_id, rating)
        return ride

    async def rate_by_driver(
        self, ride_id: str, driver_id: str, rating: int, comment: Optional[str] = None
    ) -> RideRecord:
        """Driver rates the passenger; folds into the passenger's average"""
        ride = await self._rate(
            Actor(driver_id, "driver"), ride_id, "driver_rating", rating, comment
        )
        await self._aggregate(User, ride.passenger_id, rating)
        return ride

    async def reconcile(
        self, ride_id: str, admin: Actor, outcome: str, note: Optional[str] = None
    ) -> RideRecord:
        """Administrator correction of an in-progress ride"""
        if not admin.is_admin:
            raise PermissionDenied("Only administrators can reconcile rides")
        if outcome not in RECONCILE_OUTCOMES:
            raise InvalidRequest(
                f"Outcome must be one of {', '.join(RECONCILE_OUTCOMES)}", outcome=outcome
            )

        now = self.clock()
        changes: Dict[str, Any] = {
            "set__status": outcome,
            "set__reconciled_by": admin.user_id,
            "set__reconciliation_note": note,
        }
        if outcome == "completed":
            changes.update(set__completed_at=now, set__completed_by=admin.user_id)
        else:
            changes.update(
                set__driver_id=None,
                set__cancelled_at=now,
                set__cancelled_by="admin",
                set__cancellation_reason=note or "reconciled",
            )

        ride, changed = await self._transition(
            admin,
            ride_id,
            action="reconcile",
            from_statuses=("in_progress",),
            expected={"status": "in_progress"},
            changes=changes,
            applied=lambda r: (
                r.status == outcome and r.reconciled_by and isinstance(r, ActiveRide)
            ),
        )
        history = await self._relocate(ride_id, outcome)

        if changed:
            logger.warning(f"Ride {ride_id} reconciled to {outcome} by admin {admin.user_id}")
            body = f"An administrator closed this ride as {outcome}"
            metadata = {"type": "ride_reconciled", "ride_id": ride_id, "outcome": outcome}
            self.notifier.notify(ride.passenger_id, "Ride updated", body, metadata)
            self.notifier.notify(assigned_driver_id(ride), "Ride updated", body, metadata)
        return history

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _transition(
        self,
        actor: Actor,
        ride_id: str,
        action: str,
        from_statuses: Tuple[str, ...],
        expected: Expected,
        changes: Union[Dict[str, Any], Callable[[RideRecord], Dict[str, Any]]],
        model: Type[RideRecord] = ActiveRide,
        applied: Optional[Callable[[RideRecord], bool]] = None,
        stale_error: Type[PreconditionFailed] = InvalidTransition,
    ) -> Tuple[RideRecord, bool]:
        """
        Guard, authorize and apply one conditional write.

        Returns:
            (ride, changed). changed is False when `applied` reports the
            ride already holds the target state, e.g. a retry after a write
            whose acknowledgement was lost.
        """

        async def attempt() -> Tuple[RideRecord, bool]:
            ride, _ = await self.store.locate(ride_id)
            if ride is None:
                raise RideNotFound(ride_id=ride_id)
            if applied is not None and applied(ride):
                return ride, False
            if ride.status not in from_statuses:
                raise stale_error(
                    f"Cannot {action} a ride that is {ride.status}", status=ride.status
                )

            patch = changes(ride) if callable(changes) else changes
            check_ride_update(actor, ride, fields_of(patch))

            conditions = expected(ride) if callable(expected) else expected
            updated = await self.store.conditional_update(ride_id, conditions, patch, model=model)
            if updated is not None:
                return updated, True

            current, _ = await self.store.locate(ride_id)
            if current is not None and applied is not None and applied(current):
                return current, False
            logger.info(f"Lost precondition trying to {action} ride {ride_id}")
            raise stale_error(status=current.status if current is not None else None)

        return await with_retries(
            attempt,
            attempts=self.settings.store_retry_attempts,
            base_delay=self.settings.store_retry_base_delay,
            description=f"{action} ride {ride_id}",
        )

    async def _rate(
        self,
        actor: Actor,
        ride_id: str,
        field: str,
        rating: int,
        comment: Optional[str],
    ) -> RideRecord:
        rating, comment = validate_rating(rating, comment)

        # finish a relocation that was interrupted after the completion write
        ride, where = await self.store.locate(ride_id)
        if ride is not None and where == "active" and ride.status == "completed":
            await self._relocate(ride_id, "completed")

        rating_id = uuid.uuid4().hex

        def guard_unrated(r: RideRecord) -> Dict[str, Any]:
            if r[field] is not None:
                raise InvalidTransition("You already rated this ride")
            return {"status": "completed", field: None}

        def rated_by_this_call(r: RideRecord) -> bool:
            return (
                isinstance(r, CompletedRide)
                and r[field] is not None
                and r[field].rating_id == rating_id
            )

        ride, _ = await self._transition(
            actor,
            ride_id,
            action="rate",
            from_statuses=("completed",),
            expected=guard_unrated,
            changes={
                f"set__{field}": PartyRating(
                    rating_id=rating_id, rating=rating, comment=comment, rated_at=self.clock()
                )
            },
            model=CompletedRide,
            applied=rated_by_this_call,
        )
        logger.info(f"Ride {ride_id} rated {rating} by {actor.role} {actor.user_id}")
        return ride

    async def _relocate(self, ride_id: str, status: str) -> RideRecord:
        return await with_retries(
            lambda: self.store.relocate(ride_id, status),
            attempts=self.settings.store_retry_attempts,
            base_delay=self.settings.store_retry_base_delay,
            description=f"relocate ride {ride_id}",
        )

    async def _load_driver(self, driver_id: str) -> Driver:
        with store_errors("read driver"):
            driver = Driver.objects(pk=driver_id).first()
        if driver is None:
            raise DriverNotEligible("Driver profile not found")
        return driver

    async def _count_trip(self, driver_id: str) -> None:
        try:
            with store_errors("count driver trip"):
                Driver.objects(pk=driver_id).update_one(inc__total_trips=1)
        except Exception as e:
            logger.error(f"Failed to count trip for driver {driver_id}: {str(e)}")

    async def _aggregate(self, model, pk: str, rating: int) -> None:
        try:
            await aggregate_rating(model, pk, rating)
        except Exception as e:
            # the ride keeps its rating; only the running average is stale
            logger.error(f"Failed to update {model.__name__} {pk} rating: {str(e)}")

    def _notify_cancellation(self, ride: RideRecord) -> None:
        metadata = {
            "type": "ride_cancelled",
            "ride_id": ride.ride_id,
            "cancelled_by": ride.cancelled_by,
            "reason": ride.cancellation_reason,
        }
        driver_id = assigned_driver_id(ride)

        if ride.cancelled_by == "passenger":
            self.notifier.notify(
                driver_id, "Ride cancelled", "The passenger cancelled the ride", metadata
            )
        elif ride.cancelled_by == "driver":
            self.notifier.notify(
                ride.passenger_id,
                "Ride cancelled",
                "Your driver cancelled the ride",
                metadata,
            )
        elif ride.cancelled_by == "system":
            self.notifier.notify(
                ride.passenger_id,
                "No drivers available",
                "We could not find a driver for your ride. Please try again",
                metadata,
            )
        else:
            body = "The ride was cancelled by an administrator"
            self.notifier.notify(ride.passenger_id, "Ride cancelled", body, metadata)
            self.notifier.notify(driver_id, "Ride cancelled", body, metadata)
