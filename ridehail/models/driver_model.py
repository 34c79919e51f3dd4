"""
Driver Model - Presence, approval and vehicle data for drivers
One document per driver, keyed by the driver's user id
"""

from mongoengine import (
    Document,
    EmbeddedDocument,
    EmbeddedDocumentField,
    StringField,
    BooleanField,
    DateTimeField,
    FloatField,
    IntField,
    PointField,
)

from ridehail.utils.helpers import from_geojson_point, isoformat, utcnow

DRIVER_STATUSES = ("pending", "approved", "rejected")
REQUIRED_VEHICLE_FIELDS = ("model", "plate", "color")


class Vehicle(EmbeddedDocument):
    model = StringField(max_length=50)
    plate = StringField(max_length=20)
    color = StringField(max_length=30)

    def missing_fields(self):
        return [
            name
            for name in REQUIRED_VEHICLE_FIELDS
            if not (getattr(self, name) or "").strip()
        ]

    def to_dict(self):
        return {"model": self.model, "plate": self.plate, "color": self.color}


class Driver(Document):
    """
    Driver presence record
    Written by the driver's own client, except for the rating aggregate
    """

    meta = {
        "collection": "drivers",
        "indexes": ["status", "is_online", "last_update"],
        "strict": False,
    }

    user_id = StringField(primary_key=True)
    name = StringField(max_length=100)
    phone = StringField(max_length=20)
    driver_license = StringField(max_length=50)

    status = StringField(required=True, choices=DRIVER_STATUSES, default="pending")
    vehicle = EmbeddedDocumentField(Vehicle, default=Vehicle)

    # Presence
    is_online = BooleanField(default=False)
    current_location = PointField(
        auto_index=False
    )  # GeoJSON Point: {"type": "Point", "coordinates": [longitude, latitude]}
    last_update = DateTimeField()

    # Ratings
    rating = FloatField(default=5.0)
    total_ratings = IntField(default=0)
    total_trips = IntField(default=0)

    created_at = DateTimeField(default=utcnow)

    @property
    def coordinates(self):
        return from_geojson_point(self.current_location)

    def to_dict(self):
        coords = self.coordinates
        return {
            "id": self.user_id,
            "name": self.name,
            "phone": self.phone,
            "status": self.status,
            "vehicle": self.vehicle.to_dict() if self.vehicle else None,
            "is_online": self.is_online,
            "location": (
                {"latitude": coords[0], "longitude": coords[1]} if coords else None
            ),
            "last_update": isoformat(self.last_update),
            "rating": round(self.rating, 2) if self.rating is not None else None,
            "total_ratings": self.total_ratings,
            "total_trips": self.total_trips,
        }

    def __str__(self):
        return f"Driver({self.user_id}, {self.status}, online={self.is_online})"
