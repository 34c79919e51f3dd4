"""
WebSocket connection manager for real-time ride updates.

This module provides:
- Connection management with per-connection write locks
- Ride and available-rides watches backed by store subscriptions
- Automatic stale connection cleanup and server-initiated keepalive pings
- Driver location reports feeding the presence tracker
- Offline-on-disconnect for drivers
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ridehail.errors import RideError
from ridehail.models.events import AvailableRidesEvent, DriverLocationEvent, RideSnapshotEvent
from ridehail.services import RideServices
from ridehail.services.authorization import Actor
from ridehail.services.ride_store import RideQuery, RideSnapshot
from ridehail.services.subscriptions import Subscription
from ridehail.utils.helpers import utcnow, validate_coordinates

from .ws_auth import WebSocketAuthError, authenticate_websocket

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# CONFIGURATION
# =============================================================================

HEARTBEAT_INTERVAL_SECONDS = 15
HEARTBEAT_TIMEOUT_SECONDS = 45
SEND_TIMEOUT_SECONDS = 5
CLEANUP_INTERVAL_SECONDS = 30
PING_INTERVAL_SECONDS = 10


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class ClientConnection:
    """Represents a single WebSocket client connection with metadata."""

    websocket: WebSocket
    user_id: str
    role: str
    connected_at: float = field(default_factory=time.time)
    last_heartbeat: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    is_alive: bool = True
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.user_id, role=self.role)

    def update_heartbeat(self) -> None:
        self.last_heartbeat = time.time()
        self.last_activity = time.time()

    def update_activity(self) -> None:
        self.last_activity = time.time()

    def is_stale(self, timeout: float = HEARTBEAT_TIMEOUT_SECONDS) -> bool:
        return (time.time() - self.last_heartbeat) > timeout

    def needs_ping(self, interval: float = PING_INTERVAL_SECONDS) -> bool:
        return (time.time() - self.last_activity) > interval

    def track(self, subscription: Subscription) -> None:
        self.subscriptions[subscription.subscription_id] = subscription

    def cancel_subscriptions(self) -> int:
        count = 0
        for subscription in list(self.subscriptions.values()):
            if subscription.cancel():
                count += 1
        self.subscriptions.clear()
        return count


# =============================================================================
# CONNECTION MANAGER
# =============================================================================


class ConnectionManager:
    """WebSocket connection registry, one connection per user."""

    def __init__(self):
        self._connections: Dict[str, ClientConnection] = {}
        self._connections_lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._is_running = False

    async def start(self) -> None:
        if self._is_running:
            return
        self._is_running = True
        self._cleanup_task = asyncio.create_task(
            self._every(CLEANUP_INTERVAL_SECONDS, self._cleanup_stale_connections, "cleanup")
        )
        self._keepalive_task = asyncio.create_task(
            self._every(PING_INTERVAL_SECONDS, self._send_keepalive_pings, "keepalive")
        )
        logger.info("ConnectionManager started with background cleanup and keepalive")

    async def stop(self) -> None:
        self._is_running = False
        for task in [self._cleanup_task, self._keepalive_task]:
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        for user_id in list(self._connections):
            await self.disconnect(user_id, reason="Server shutting down")
        logger.info("ConnectionManager stopped")

    async def _every(self, interval: float, job, label: str) -> None:
        while self._is_running:
            try:
                await asyncio.sleep(interval)
                await job()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Connection {label} loop error: {type(e).__name__}: {e}")

    async def _send_keepalive_pings(self) -> None:
        async with self._connections_lock:
            connections_to_ping = [
                user_id
                for user_id, conn in self._connections.items()
                if conn.is_alive and conn.needs_ping()
            ]

        for user_id in connections_to_ping:
            await self.send_to_user(
                user_id, {"event_type": "ping", "timestamp": utcnow().isoformat()}
            )

    async def _cleanup_stale_connections(self) -> None:
        async with self._connections_lock:
            stale_users = [
                user_id for user_id, conn in self._connections.items() if conn.is_stale()
            ]

        for user_id in stale_users:
            logger.warning(f"Removing stale connection: {user_id}")
            await self.disconnect(user_id, reason="Heartbeat timeout")

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    async def connect(self, websocket: WebSocket, user_id: str, role: str) -> ClientConnection:
        """Accept and register a new WebSocket connection."""
        if not self._is_running:
            await self.start()

        if user_id in self._connections:
            logger.info(f"Closing existing connection for user {user_id} (new connection)")
            await self.disconnect(user_id, reason="New connection established")

        await websocket.accept()
        connection = ClientConnection(websocket=websocket, user_id=user_id, role=role)

        async with self._connections_lock:
            self._connections[user_id] = connection

        logger.info(f"WebSocket connected: user_id={user_id}, role={role}")
        return connection

    async def disconnect(
        self,
        user_id: str,
        reason: str = "Client disconnected",
        connection: Optional[ClientConnection] = None,
    ) -> Optional[ClientConnection]:
        """
        Disconnect and clean up a WebSocket connection.

        When `connection` is given only that connection is removed, so a
        replaced connection cannot tear down its successor.
        """
        async with self._connections_lock:
            current = self._connections.get(user_id)
            if connection is None or current is connection:
                self._connections.pop(user_id, None)
            connection = connection or current

        if connection is None:
            return None

        connection.is_alive = False
        cancelled = connection.cancel_subscriptions()
        try:
            await connection.websocket.close(code=status.WS_1000_NORMAL_CLOSURE, reason=reason)
        except RuntimeError:
            # already closed by the client
            pass

        logger.info(
            f"WebSocket disconnected: user_id={user_id}, reason={reason}, "
            f"subscriptions cancelled={cancelled}"
        )
        return connection

    def get_connection(self, user_id: str) -> Optional[ClientConnection]:
        return self._connections.get(user_id)

    def is_connected(self, user_id: str) -> bool:
        conn = self._connections.get(user_id)
        return conn is not None and conn.is_alive

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def send_to_user(
        self, user_id: str, message: dict, timeout: float = SEND_TIMEOUT_SECONDS
    ) -> bool:
        """Send a message to a specific user with timeout protection."""
        connection = self.get_connection(user_id)
        if not connection or not connection.is_alive:
            return False

        try:
            async with connection.write_lock:
                await asyncio.wait_for(connection.websocket.send_json(message), timeout=timeout)
            connection.update_activity()
            logger.debug(f"Message sent to {user_id}: {message.get('event_type', 'unknown')}")
            return True

        except asyncio.TimeoutError:
            logger.warning(f"Send timeout for user {user_id}, marking as stale")
            connection.is_alive = False
            return False

        except (RuntimeError, WebSocketDisconnect) as e:
            logger.debug(f"WebSocket not connected for {user_id}: {str(e)}")
            connection.is_alive = False
            return False

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict:
        return {
            "active_connections": len(self._connections),
            "active_subscriptions": sum(
                len(conn.subscriptions) for conn in self._connections.values()
            ),
            "connections_by_role": self._count_by_role(),
        }

    def _count_by_role(self) -> dict:
        counts = {"passenger": 0, "driver": 0, "admin": 0}
        for conn in self._connections.values():
            if conn.role in counts:
                counts[conn.role] += 1
        return counts


# =============================================================================
# GLOBAL MANAGER INSTANCE
# =============================================================================

manager = ConnectionManager()


# =============================================================================
# EVENT HANDLERS
# =============================================================================


def _error(message: str, **extra) -> dict:
    return {"event_type": "error", "message": message, **extra}


async def handle_watch_ride(
    connection: ClientConnection, data: dict, services: RideServices
) -> dict:
    """
    Stream snapshots of one ride. The watch ends once the ride leaves the
    live store or the watcher may no longer read it.
    """
    ride_id = data.get("ride_id")
    if not ride_id:
        return _error("Missing ride_id")

    # raises RideNotFound / PermissionDenied
    await services.state_machine.get_ride(ride_id, connection.actor)

    subscription: Optional[Subscription] = None

    async def on_snapshot(snapshot: RideSnapshot) -> None:
        event = RideSnapshotEvent(
            subscription_id=subscription.subscription_id,
            ride_id=snapshot.ride_id,
            ride=snapshot.ride,
            location=snapshot.location,
            revoked=snapshot.revoked,
        )
        await manager.send_to_user(connection.user_id, event.model_dump(mode="json"))
        if snapshot.ride is None:
            subscription.cancel()
            connection.subscriptions.pop(subscription.subscription_id, None)

    subscription = services.store.watch_ride(ride_id, on_snapshot, actor=connection.actor)
    connection.track(subscription)
    connection.update_heartbeat()

    return {
        "event_type": "watching",
        "watch": "ride",
        "ride_id": ride_id,
        "subscription_id": subscription.subscription_id,
    }


async def handle_watch_available_rides(
    connection: ClientConnection, data: dict, services: RideServices
) -> dict:
    """Drivers: stream the pending rides they may accept"""
    if connection.role != "driver":
        return _error("Only drivers can watch available rides")

    subscription: Optional[Subscription] = None

    async def on_rides(rides: list) -> None:
        event = AvailableRidesEvent(subscription_id=subscription.subscription_id, rides=rides)
        await manager.send_to_user(connection.user_id, event.model_dump(mode="json"))

    subscription = await services.dispatch.watch_available_rides(connection.user_id, on_rides)
    connection.track(subscription)
    connection.update_heartbeat()

    return {
        "event_type": "watching",
        "watch": "available_rides",
        "subscription_id": subscription.subscription_id,
    }


async def handle_unwatch(connection: ClientConnection, data: dict, services: RideServices) -> dict:
    subscription_id = data.get("subscription_id")
    subscription = connection.subscriptions.pop(subscription_id, None)
    if subscription is not None:
        subscription.cancel()
    return {"event_type": "unwatched", "subscription_id": subscription_id}


async def handle_location_update(
    connection: ClientConnection, data: dict, services: RideServices
) -> Optional[dict]:
    """Driver location report; relayed to the passenger of the driver's live ride"""
    if connection.role != "driver":
        logger.warning(f"Non-driver {connection.user_id} attempted location update")
        return _error("Only drivers can send location updates")

    latitude = data.get("latitude")
    longitude = data.get("longitude")
    is_valid, message = validate_coordinates(latitude, longitude)
    if not is_valid:
        return _error(message)
    coords = (float(latitude), float(longitude))

    connection.update_heartbeat()
    stored = await services.presence.report_location(connection.user_id, coords)
    if not stored:
        return None  # throttled or offline

    rides = await services.store.query(
        RideQuery(statuses=("accepted", "in_progress"), driver_id=connection.user_id, limit=1)
    )
    for ride in rides:
        event = DriverLocationEvent(
            ride_id=ride.ride_id,
            driver_id=connection.user_id,
            latitude=coords[0],
            longitude=coords[1],
        )
        await manager.send_to_user(ride.passenger_id, event.model_dump(mode="json"))
    return None


async def handle_ping(connection: ClientConnection, data: dict, services: RideServices) -> dict:
    """Handle ping event - respond with pong for heartbeat."""
    connection.update_heartbeat()
    return {"event_type": "pong", "timestamp": utcnow().isoformat()}


async def handle_pong(
    connection: ClientConnection, data: dict, services: RideServices
) -> Optional[dict]:
    connection.update_heartbeat()
    return None


EVENT_HANDLERS = {
    "watch_ride": handle_watch_ride,
    "watch_available_rides": handle_watch_available_rides,
    "unwatch": handle_unwatch,
    "location_update": handle_location_update,
    "ping": handle_ping,
    "pong": handle_pong,
}


# =============================================================================
# WEBSOCKET ENDPOINT
# =============================================================================


async def dispatch_event(connection: ClientConnection, raw_message: str, services: RideServices):
    try:
        data = json.loads(raw_message)
    except json.JSONDecodeError:
        return _error("Invalid JSON format")
    if not isinstance(data, dict):
        return _error("Invalid message")

    event_type = data.get("event_type") or data.get("type")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        return _error(f"Unknown event type: {event_type}" if event_type else "Missing event_type")

    try:
        return await handler(connection, data, services)
    except RideError as e:
        return _error(e.message, code=e.code)


@router.websocket("/ride")
async def websocket_endpoint(websocket: WebSocket):
    """Main WebSocket endpoint for real-time communication."""
    services: RideServices = websocket.app.state.services

    try:
        auth = await authenticate_websocket(websocket)
    except WebSocketAuthError as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e))
        return

    user_id, role = auth["user_id"], auth["role"]
    connection = await manager.connect(websocket, user_id, role)

    try:
        await manager.send_to_user(
            user_id,
            {
                "event_type": "connected",
                "message": "Connected to real-time ride service",
                "user_id": user_id,
                "role": role,
                "timestamp": utcnow().isoformat(),
            },
        )

        # Message loop
        while connection.is_alive:
            try:
                raw_message = await asyncio.wait_for(
                    websocket.receive_text(), timeout=HEARTBEAT_INTERVAL_SECONDS
                )
            except asyncio.TimeoutError:
                continue

            connection.update_activity()
            response = await dispatch_event(connection, raw_message, services)
            if response:
                await manager.send_to_user(user_id, response)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally: {user_id}")
    except Exception as e:
        logger.error(f"WebSocket connection error for {user_id}: {type(e).__name__}: {str(e)}")

    finally:
        await manager.disconnect(user_id, reason="Connection ended", connection=connection)
        if role == "driver" and services.settings.offline_on_disconnect:
            # a newer connection keeps the driver online
            if not manager.is_connected(user_id):
                try:
                    await services.presence.go_offline(user_id)
                except RideError as e:
                    logger.warning(f"Could not mark driver {user_id} offline: {e.message}")


# =============================================================================
# ADMIN ENDPOINT
# =============================================================================


@router.get("/stats")
async def get_websocket_stats():
    """Get WebSocket statistics for monitoring."""
    return {"success": True, "data": manager.get_stats()}
