"""
Pricing Engine
Deterministic fare computation from distance, duration, category and
time-of-day/weather multipliers.

Distance billing: the category's base price covers the first
``min_distance`` km; the excess is rounded UP to a whole km, so
``min_distance + 2.0`` km bills 2 km and ``min_distance + 2.01`` km bills 3 km.
Duration is billed per started minute.
"""

import logging
import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def parse_hhmm(value: str) -> int:
    """Minutes since midnight for an "HH:MM" string"""
    hours, minutes = value.split(":")
    hours, minutes = int(hours), int(minutes)
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Invalid time of day: {value!r}")
    return hours * 60 + minutes


class PeakWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, v):
        parse_hhmm(v)
        return v

    def contains(self, minute_of_day: int) -> bool:
        start, end = parse_hhmm(self.start), parse_hhmm(self.end)
        if start <= end:
            return start <= minute_of_day <= end
        # wraps past midnight, e.g. 22:00-02:00
        return minute_of_day >= start or minute_of_day <= end


class DynamicPricingTerms(BaseModel):
    model_config = ConfigDict(frozen=True)

    rain_multiplier: float = Field(default=1.0, gt=0)
    peak_hours_multiplier: float = Field(default=1.0, gt=0)
    peak_hours: Tuple[PeakWindow, ...] = ()


class CategoryPricing(BaseModel):
    """Immutable pricing terms of a vehicle category"""

    model_config = ConfigDict(frozen=True)

    base_price: float = Field(ge=0)
    price_per_km: float = Field(ge=0)
    price_per_minute: float = Field(default=0.0, ge=0)
    min_distance: float = Field(default=0.0, ge=0)  # km
    min_price: float = Field(default=0.0, ge=0)
    dynamic_pricing: DynamicPricingTerms = DynamicPricingTerms()

    @classmethod
    def from_source(cls, source: Any) -> "CategoryPricing":
        """Build from a category document, a ride snapshot or a plain mapping"""
        if isinstance(source, cls):
            return source
        if hasattr(source, "to_pricing_dict"):
            return cls.model_validate(source.to_pricing_dict())
        if isinstance(source, Mapping):
            return cls.model_validate(dict(source))
        raise TypeError(f"Cannot read pricing terms from {type(source).__name__}")


PricingSource = Union[CategoryPricing, Mapping, Any]


def is_peak_hour(now: datetime, windows: Iterable[PeakWindow]) -> bool:
    """Inclusive at both ends, minute resolution"""
    minute_of_day = now.hour * 60 + now.minute
    return any(window.contains(minute_of_day) for window in windows)


def _dec(value: float) -> Decimal:
    return Decimal(str(value))


def calculate_price(
    distance_m: float,
    duration_s: float,
    category: PricingSource,
    now: datetime,
    is_raining: bool = False,
) -> float:
    """
    Calculate ride price

    Args:
        distance_m: Route distance in meters
        duration_s: Route duration in seconds
        category: Pricing terms (CategoryPricing, category document, snapshot or mapping)
        now: Local wall-clock time used for peak-hour windows
        is_raining: Whether the rain multiplier applies

    Returns:
        Price rounded to 2 decimals, never below the category minimum
    """
    pricing = CategoryPricing.from_source(category)
    total = _dec(pricing.base_price)

    excess_km = (distance_m - pricing.min_distance * 1000) / 1000
    if excess_km > 0:
        # round away float noise before taking the ceiling
        total += math.ceil(round(excess_km, 6)) * _dec(pricing.price_per_km)

    if duration_s > 0:
        total += math.ceil(duration_s / 60) * _dec(pricing.price_per_minute)

    dynamic = pricing.dynamic_pricing
    if is_peak_hour(now, dynamic.peak_hours):
        total *= _dec(dynamic.peak_hours_multiplier)

    if is_raining:
        total *= _dec(dynamic.rain_multiplier)

    total = max(total, _dec(pricing.min_price))
    return float(total.quantize(CENTS, rounding=ROUND_HALF_UP))


def conservative_price(category: Any) -> float:
    """Best-effort minimum price when the category cannot be fully parsed"""
    if isinstance(category, Mapping):
        raw = category.get("min_price")
    else:
        raw = getattr(category, "min_price", None)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or value < 0:
        return 0.0
    return float(_dec(value).quantize(CENTS, rounding=ROUND_HALF_UP))


def safe_price(
    distance_m: float,
    duration_s: float,
    category: PricingSource,
    now: datetime,
    is_raining: bool = False,
) -> float:
    """calculate_price that falls back to the category minimum on malformed data"""
    try:
        return calculate_price(distance_m, duration_s, category, now, is_raining)
    except (TypeError, ValueError, ArithmeticError) as e:
        fallback = conservative_price(category)
        logger.warning(
            f"Malformed pricing data, quoting conservative price {fallback}: {str(e)}"
        )
        return fallback
