"""
WebSocket Event Models
Defines structured event types for real-time communication
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ridehail.utils.helpers import utcnow


class RideSnapshotEvent(BaseModel):
    """Pushed on every change of a watched ride; ride is None once it leaves the live store"""

    event_type: str = "ride_snapshot"
    subscription_id: str
    ride_id: str
    ride: Optional[Dict[str, Any]] = None
    location: Optional[str] = None  # active, completed, cancelled or None
    revoked: bool = False  # watcher lost read access; no further snapshots follow
    timestamp: datetime = Field(default_factory=utcnow)


class AvailableRidesEvent(BaseModel):
    """Pushed to drivers whenever the set of pending rides they can see changes"""

    event_type: str = "available_rides"
    subscription_id: str
    rides: List[Dict[str, Any]]
    timestamp: datetime = Field(default_factory=utcnow)


class NotificationEvent(BaseModel):
    """Pushed alongside the stored notification"""

    event_type: str = "notification"
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class DriverLocationEvent(BaseModel):
    """Emitted to the passenger when the assigned driver reports a location"""

    event_type: str = "driver_location_update"
    ride_id: str
    driver_id: str
    latitude: float
    longitude: float
    timestamp: datetime = Field(default_factory=utcnow)
