"""
Vehicle Category Model - Admin-managed pricing templates
Rides copy a snapshot of their category at creation time
"""

import logging

from mongoengine import (
    Document,
    EmbeddedDocument,
    EmbeddedDocumentField,
    EmbeddedDocumentListField,
    StringField,
    FloatField,
    BooleanField,
    DateTimeField,
)

from ridehail.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class PeakHour(EmbeddedDocument):
    start = StringField(required=True, regex=r"^\d{2}:\d{2}$")  # "HH:MM"
    end = StringField(required=True, regex=r"^\d{2}:\d{2}$")


class DynamicPricing(EmbeddedDocument):
    rain_multiplier = FloatField(default=1.2, min_value=1.0)
    peak_hours_multiplier = FloatField(default=1.5, min_value=1.0)
    peak_hours = EmbeddedDocumentListField(PeakHour)


class PricingFieldsMixin:
    """Shared accessor for documents carrying the pricing fields"""

    def to_pricing_dict(self) -> dict:
        dynamic = self.dynamic_pricing or DynamicPricing()
        return {
            "base_price": self.base_price,
            "price_per_km": self.price_per_km,
            "price_per_minute": self.price_per_minute,
            "min_distance": self.min_distance,
            "min_price": self.min_price,
            "dynamic_pricing": {
                "rain_multiplier": dynamic.rain_multiplier,
                "peak_hours_multiplier": dynamic.peak_hours_multiplier,
                "peak_hours": [
                    {"start": p.start, "end": p.end} for p in dynamic.peak_hours
                ],
            },
        }


class VehicleCategory(PricingFieldsMixin, Document):
    """Vehicle tier with its own pricing formula"""

    meta = {"collection": "vehicle_categories", "strict": False}

    category_id = StringField(primary_key=True)
    name = StringField(required=True, max_length=50)
    description = StringField(max_length=200)
    icon = StringField(max_length=50)

    base_price = FloatField(required=True, min_value=0)
    price_per_km = FloatField(required=True, min_value=0)
    price_per_minute = FloatField(default=0.0, min_value=0)
    min_distance = FloatField(default=0.0, min_value=0)  # km covered by base_price
    min_price = FloatField(required=True, min_value=0)
    dynamic_pricing = EmbeddedDocumentField(DynamicPricing, default=DynamicPricing)

    is_active = BooleanField(default=True)
    updated_at = DateTimeField(default=utcnow)

    def to_dict(self):
        data = {
            "id": self.category_id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
        }
        data.update(self.to_pricing_dict())
        return data

    def __str__(self):
        return f"VehicleCategory({self.category_id})"


DEFAULT_PEAK_HOURS = [("07:00", "09:00"), ("17:00", "19:00")]

DEFAULT_CATEGORIES = [
    {
        "category_id": "economico",
        "name": "Econômico",
        "description": "Carro Básico",
        "icon": "car",
        "base_price": 8.0,
        "price_per_km": 2.0,
        "min_distance": 3.0,
        "min_price": 8.0,
    },
    {
        "category_id": "confort",
        "name": "Confort",
        "description": "Carro Sedan",
        "icon": "car-sport",
        "base_price": 10.0,
        "price_per_km": 3.0,
        "min_distance": 3.0,
        "min_price": 10.0,
    },
]


def seed_default_categories() -> int:
    """Insert the default categories when the collection is empty"""
    if VehicleCategory.objects.count() > 0:
        return 0

    for data in DEFAULT_CATEGORIES:
        VehicleCategory(
            dynamic_pricing=DynamicPricing(
                rain_multiplier=1.2,
                peak_hours_multiplier=1.5,
                peak_hours=[PeakHour(start=s, end=e) for s, e in DEFAULT_PEAK_HOURS],
            ),
            **data,
        ).save()

    logger.info(f"Seeded {len(DEFAULT_CATEGORIES)} default vehicle categories")
    return len(DEFAULT_CATEGORIES)
