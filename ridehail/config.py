"""
Application Settings
Reads configuration from environment variables (.env supported)
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

REJECT_POLICIES = ("per_driver", "cancel_ride")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_optional_float(name: str) -> Optional[float]:
    value = os.getenv(name, "").strip()
    return float(value) if value else None


@dataclass(frozen=True)
class Settings:
    """Runtime configuration shared by the services and the API layer"""

    mongo_uri: str = "mongodb://localhost:27017/ridehail"
    mongo_db: str = "ridehail"

    jwt_secret_key: str = "your-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_hours: int = 24 * 7  # 7 days

    google_maps_api_key: Optional[str] = None
    openweather_api_key: Optional[str] = None
    pricing_timezone: str = "UTC"

    # Presence
    presence_freshness_minutes: int = 15
    presence_min_interval_seconds: int = 10
    offline_on_disconnect: bool = True

    # Dispatch
    search_interval_seconds: float = 3.0
    search_timeout_seconds: float = 300.0
    match_radius_km: Optional[float] = None
    reject_policy: str = "per_driver"

    # Store retries
    store_retry_attempts: int = 3
    store_retry_base_delay: float = 0.5

    seed_default_categories: bool = True
    log_level: str = "INFO"

    def __post_init__(self):
        if self.reject_policy not in REJECT_POLICIES:
            raise ValueError(
                f"REJECT_POLICY must be one of {REJECT_POLICIES}, got {self.reject_policy!r}"
            )


def load_settings() -> Settings:
    """Build settings from the current environment"""
    return Settings(
        mongo_uri=os.getenv("MONGO_URI", Settings.mongo_uri),
        mongo_db=os.getenv("MONGO_DB", Settings.mongo_db),
        jwt_secret_key=os.getenv("JWT_SECRET_KEY", Settings.jwt_secret_key),
        access_token_expire_hours=int(
            os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", Settings.access_token_expire_hours)
        ),
        google_maps_api_key=os.getenv("GOOGLE_MAPS_API_KEY") or None,
        openweather_api_key=os.getenv("OPENWEATHER_API_KEY") or None,
        pricing_timezone=os.getenv("PRICING_TIMEZONE", Settings.pricing_timezone),
        presence_freshness_minutes=int(
            os.getenv("PRESENCE_FRESHNESS_MINUTES", Settings.presence_freshness_minutes)
        ),
        presence_min_interval_seconds=int(
            os.getenv(
                "PRESENCE_MIN_INTERVAL_SECONDS", Settings.presence_min_interval_seconds
            )
        ),
        offline_on_disconnect=_env_bool("OFFLINE_ON_DISCONNECT", "true"),
        search_interval_seconds=float(
            os.getenv("SEARCH_INTERVAL_SECONDS", Settings.search_interval_seconds)
        ),
        search_timeout_seconds=float(
            os.getenv("SEARCH_TIMEOUT_SECONDS", Settings.search_timeout_seconds)
        ),
        match_radius_km=_env_optional_float("MATCH_RADIUS_KM"),
        reject_policy=os.getenv("REJECT_POLICY", Settings.reject_policy),
        store_retry_attempts=int(
            os.getenv("STORE_RETRY_ATTEMPTS", Settings.store_retry_attempts)
        ),
        store_retry_base_delay=float(
            os.getenv("STORE_RETRY_BASE_DELAY", Settings.store_retry_base_delay)
        ),
        seed_default_categories=_env_bool("SEED_DEFAULT_CATEGORIES", "true"),
        log_level=os.getenv("LOG_LEVEL", Settings.log_level),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
