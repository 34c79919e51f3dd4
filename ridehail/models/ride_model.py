"""
Ride Model - Represents ride requests and their lifecycle
Status flow: pending → accepted → in_progress → completed, or cancelled
from pending/accepted. Live rides sit in `active_rides`; terminal rides are
relocated under the same id into `completed_rides` or `cancelled_rides`.
"""

from mongoengine import (
    Document,
    EmbeddedDocument,
    EmbeddedDocumentField,
    StringField,
    DateTimeField,
    FloatField,
    IntField,
    BooleanField,
    ListField,
)

from ridehail.models.category_model import DynamicPricing, PeakHour, PricingFieldsMixin
from ridehail.models.driver_model import Vehicle
from ridehail.utils.helpers import isoformat, utcnow

RIDE_STATUSES = ("pending", "accepted", "in_progress", "completed", "cancelled")
TERMINAL_STATUSES = ("completed", "cancelled")
DRIVER_ASSIGNED_STATUSES = ("accepted", "in_progress", "completed")
CANCELLABLE_STATUSES = ("pending", "accepted")
CANCELLED_BY = ("passenger", "driver", "admin", "system")


class Place(EmbeddedDocument):
    place = StringField(max_length=200)
    address = StringField(required=True, max_length=300)
    latitude = FloatField(required=True, min_value=-90, max_value=90)
    longitude = FloatField(required=True, min_value=-180, max_value=180)

    @property
    def coordinates(self):
        return (self.latitude, self.longitude)

    def to_dict(self):
        return {
            "place": self.place,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


class CategorySnapshot(PricingFieldsMixin, EmbeddedDocument):
    """Value copy of the category at request time, never a live reference"""

    category_id = StringField(required=True)
    name = StringField()
    base_price = FloatField(default=0.0)
    price_per_km = FloatField(default=0.0)
    price_per_minute = FloatField(default=0.0)
    min_distance = FloatField(default=0.0)
    min_price = FloatField(default=0.0)
    dynamic_pricing = EmbeddedDocumentField(DynamicPricing, default=DynamicPricing)

    @classmethod
    def from_category(cls, category) -> "CategorySnapshot":
        source = category.dynamic_pricing or DynamicPricing()
        return cls(
            category_id=category.category_id,
            name=category.name,
            base_price=category.base_price,
            price_per_km=category.price_per_km,
            price_per_minute=category.price_per_minute or 0.0,
            min_distance=category.min_distance or 0.0,
            min_price=category.min_price,
            # deep copy so edits to the category never reach the ride
            dynamic_pricing=DynamicPricing(
                rain_multiplier=source.rain_multiplier,
                peak_hours_multiplier=source.peak_hours_multiplier,
                peak_hours=[PeakHour(start=p.start, end=p.end) for p in source.peak_hours],
            ),
        )

    def to_dict(self):
        data = {"id": self.category_id, "name": self.name}
        data.update(self.to_pricing_dict())
        return data


class DriverSnapshot(EmbeddedDocument):
    """Driver details denormalized onto the ride at accept time"""

    driver_id = StringField(required=True)
    name = StringField()
    phone = StringField()
    rating = FloatField()
    vehicle = EmbeddedDocumentField(Vehicle)
    latitude = FloatField()
    longitude = FloatField()

    def to_dict(self):
        return {
            "id": self.driver_id,
            "name": self.name,
            "phone": self.phone,
            "rating": self.rating,
            "vehicle": self.vehicle.to_dict() if self.vehicle else None,
            "location": (
                {"latitude": self.latitude, "longitude": self.longitude}
                if self.latitude is not None
                else None
            ),
        }


class PartyRating(EmbeddedDocument):
    rating_id = StringField()  # identifies the call that wrote it
    rating = IntField(required=True, min_value=1, max_value=5)
    comment = StringField(max_length=500)
    rated_at = DateTimeField(default=utcnow)

    def to_dict(self):
        return {
            "rating": self.rating,
            "comment": self.comment,
            "rated_at": isoformat(self.rated_at),
        }


# Field sets each party may write on a completed ride. Disjoint by construction.
PASSENGER_RATING_FIELDS = frozenset({"passenger_rating"})
DRIVER_RATING_FIELDS = frozenset({"driver_rating"})


class RideRecord(Document):
    """
    Ride fields shared by the live and historical collections
    """

    meta = {"abstract": True, "strict": False}

    # Participants
    passenger_id = StringField(required=True)
    passenger_name = StringField(max_length=100)
    passenger_phone = StringField(max_length=20)
    driver_id = StringField(null=True, default=None)  # Assigned when accepted
    driver = EmbeddedDocumentField(DriverSnapshot)

    # Geography, immutable after creation
    origin = EmbeddedDocumentField(Place, required=True)
    destination = EmbeddedDocumentField(Place, required=True)

    # Commercial terms
    category = EmbeddedDocumentField(CategorySnapshot, required=True)
    price = FloatField(required=True, min_value=0)
    distance = FloatField(default=0.0)  # meters
    duration = IntField(default=0)  # seconds
    payment_method = StringField(max_length=30, default="cash")
    notes = StringField(max_length=500)

    # Status Management
    status = StringField(required=True, choices=RIDE_STATUSES, default="pending")
    driver_arrived = BooleanField(default=False)
    declined_by = ListField(StringField())

    # Terminal details
    completed_by = StringField()
    final_location = ListField(FloatField())  # [latitude, longitude]
    cancelled_by = StringField(choices=CANCELLED_BY)
    cancellation_reason = StringField(max_length=500)
    reconciled_by = StringField()
    reconciliation_note = StringField(max_length=500)

    # Per-party ratings, disjoint field sets
    passenger_rating = EmbeddedDocumentField(PartyRating)
    driver_rating = EmbeddedDocumentField(PartyRating)

    # Timestamps for lifecycle tracking
    created_at = DateTimeField(default=utcnow)
    accepted_at = DateTimeField()
    arrived_at = DateTimeField()
    started_at = DateTimeField()
    completed_at = DateTimeField()
    cancelled_at = DateTimeField()
    updated_at = DateTimeField(default=utcnow)

    @property
    def ride_id(self) -> str:
        return str(self.id)

    def to_dict(self):
        """Convert ride to dictionary"""
        return {
            "id": str(self.id),
            "passenger": {
                "id": self.passenger_id,
                "name": self.passenger_name,
                "phone": self.passenger_phone,
            },
            "driver_id": self.driver_id,
            "driver": self.driver.to_dict() if self.driver else None,
            "origin": self.origin.to_dict() if self.origin else None,
            "destination": self.destination.to_dict() if self.destination else None,
            "category": self.category.to_dict() if self.category else None,
            "price": self.price,
            "distance": self.distance,
            "duration": self.duration,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "status": self.status,
            "driver_arrived": self.driver_arrived,
            "completed_by": self.completed_by,
            "final_location": list(self.final_location) or None,
            "cancelled_by": self.cancelled_by,
            "cancellation_reason": self.cancellation_reason,
            "passenger_rating": (
                self.passenger_rating.to_dict() if self.passenger_rating else None
            ),
            "driver_rating": (
                self.driver_rating.to_dict() if self.driver_rating else None
            ),
            "created_at": isoformat(self.created_at),
            "accepted_at": isoformat(self.accepted_at),
            "arrived_at": isoformat(self.arrived_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "cancelled_at": isoformat(self.cancelled_at),
        }

    def __str__(self):
        return f"Ride({self.id}, {self.status})"


class ActiveRide(RideRecord):
    meta = {
        "collection": "active_rides",
        "indexes": ["status", "passenger_id", "driver_id", "created_at"],
    }


class CompletedRide(RideRecord):
    meta = {
        "collection": "completed_rides",
        "indexes": ["passenger_id", "driver_id", "completed_at"],
    }


class CancelledRide(RideRecord):
    meta = {
        "collection": "cancelled_rides",
        "indexes": ["passenger_id", "driver_id", "cancelled_at"],
    }


HISTORY_MODELS = {"completed": CompletedRide, "cancelled": CancelledRide}


class RideRejection(Document):
    """Per-driver decline log; the ride itself stays pending"""

    meta = {"collection": "ride_rejections", "indexes": ["ride_id", "driver_id"]}

    ride_id = StringField(required=True)
    driver_id = StringField(required=True)
    reason = StringField(max_length=200)
    ride_snapshot = StringField()  # JSON copy of the ride when declined
    rejected_at = DateTimeField(default=utcnow)


def assert_ride_invariants(ride: RideRecord) -> None:
    """
    Raise AssertionError when a ride record breaks the lifecycle invariants
    """
    # a cancelled ride keeps the driver snapshot but releases driver_id
    has_driver = bool(ride.driver_id)
    assert has_driver == (ride.status in DRIVER_ASSIGNED_STATUSES), (
        f"ride {ride.id}: driver_id={ride.driver_id!r} with status {ride.status}"
    )

    if ride.category is not None and ride.category.min_price is not None:
        assert ride.price >= ride.category.min_price, (
            f"ride {ride.id}: price {ride.price} below minimum {ride.category.min_price}"
        )

    if ride.driver_arrived:
        assert ride.status != "pending", (
            f"ride {ride.id}: driver_arrived set on a pending ride"
        )
