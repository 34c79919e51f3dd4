"""
Ride update authorization
Field-set rules checked before every ride write:
- admins may write anything
- the passenger and the assigned driver may write their lifecycle fields
- an unassigned driver may only claim or decline a pending ride
- on a completed ride each party may only write its own rating field set
"""

from dataclasses import dataclass
from typing import Iterable, Set

from ridehail.errors import PermissionDenied
from ridehail.models.ride_model import (
    DRIVER_RATING_FIELDS,
    PASSENGER_RATING_FIELDS,
    RideRecord,
)

ACCEPT_FIELDS = frozenset({"status", "driver_id", "driver", "accepted_at"})
DECLINE_FIELDS = frozenset({"declined_by"})
CANCEL_FIELDS = frozenset(
    {"status", "driver_id", "cancelled_at", "cancelled_by", "cancellation_reason"}
)
DRIVER_LIFECYCLE_FIELDS = CANCEL_FIELDS | frozenset(
    {
        "driver_arrived",
        "arrived_at",
        "started_at",
        "completed_at",
        "completed_by",
        "final_location",
    }
)

UPDATE_OPERATORS = ("set", "unset", "inc", "push", "pull", "add_to_set")


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as supplied by the identity provider"""

    user_id: str
    role: str  # passenger, driver or admin

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def fields_of(changes: Iterable[str]) -> Set[str]:
    """Top-level field names touched by mongoengine update kwargs"""
    fields = set()
    for key in changes:
        parts = key.split("__")
        if parts[0] in UPDATE_OPERATORS and len(parts) > 1:
            parts = parts[1:]
        fields.add(parts[0])
    fields.discard("updated_at")
    return fields


def assigned_driver_id(ride: RideRecord):
    if ride.driver_id:
        return ride.driver_id
    return ride.driver.driver_id if ride.driver else None


def check_ride_update(actor: Actor, ride: RideRecord, fields: Iterable[str]) -> None:
    """Raise PermissionDenied unless `actor` may write `fields` on `ride`"""
    fields = set(fields) - {"updated_at"}
    if actor.is_admin:
        return

    is_passenger = actor.user_id == ride.passenger_id
    is_driver = actor.role == "driver" and actor.user_id == assigned_driver_id(ride)

    allowed = None
    if ride.status == "completed":
        if is_passenger:
            allowed = PASSENGER_RATING_FIELDS
        elif is_driver:
            allowed = DRIVER_RATING_FIELDS
    elif ride.status == "cancelled":
        allowed = None
    elif is_passenger:
        allowed = CANCEL_FIELDS
    elif is_driver:
        allowed = DRIVER_LIFECYCLE_FIELDS
    elif actor.role == "driver" and ride.status == "pending" and not ride.driver_id:
        allowed = ACCEPT_FIELDS | DECLINE_FIELDS

    if allowed is None or not fields <= allowed:
        raise PermissionDenied(
            f"{actor.role} {actor.user_id} may not update "
            f"{', '.join(sorted(fields)) or 'this ride'} on a {ride.status} ride"
        )


# Stands in for the dispatcher when it cancels rides nobody accepted
SYSTEM_ACTOR = Actor(user_id="system", role="admin")


def party_of(actor: Actor, ride: RideRecord) -> str:
    """Value recorded in cancelled_by"""
    if actor == SYSTEM_ACTOR:
        return "system"
    if actor.is_admin:
        return "admin"
    if actor.user_id == ride.passenger_id:
        return "passenger"
    return "driver"


def check_ride_read(actor: Actor, ride: RideRecord) -> None:
    """Parties and admins see a ride; any driver may see a pending one"""
    if actor.is_admin or actor.user_id == ride.passenger_id:
        return
    if actor.role == "driver":
        if actor.user_id == assigned_driver_id(ride):
            return
        if ride.status == "pending" and not ride.driver_id:
            return
    raise PermissionDenied("You are not allowed to view this ride")
