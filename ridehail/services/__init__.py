"""
Services package - Ride lifecycle core.

Business logic that operates on the mongoengine documents but is decoupled
from the HTTP/WebSocket layer.

Modules:
    - pricing: fare computation
    - presence: driver online state and freshness
    - ride_store: live/historical ride records and subscriptions
    - state_machine: ride transitions
    - dispatch: quotes, ride creation, matching and the accept race
    - notifications: fire-and-forget user notifications
"""

from dataclasses import dataclass
from typing import Optional

from ridehail.config import Settings
from ridehail.utils.helpers import utcnow
from .authorization import SYSTEM_ACTOR, Actor, check_ride_read, check_ride_update
from .dispatch import DispatchService, PriceQuote
from .notifications import Notifier, PushFn
from .presence import PresenceTracker
from .pricing import CategoryPricing, calculate_price, safe_price
from .ride_store import RideQuery, RideSnapshot, RideStore
from .state_machine import RideStateMachine
from .subscriptions import Subscription, SubscriptionHub


@dataclass
class RideServices:
    """The wired service graph the API layer works against"""

    settings: Settings
    store: RideStore
    notifier: Notifier
    presence: PresenceTracker
    state_machine: RideStateMachine
    dispatch: DispatchService

    async def shutdown(self) -> None:
        await self.dispatch.shutdown()
        await self.notifier.drain()
        self.store.hub.close()


def build_services(
    settings: Settings, push: Optional[PushFn] = None, **dispatch_options
) -> RideServices:
    """
    Wire the services together.

    Args:
        settings: Runtime configuration
        push: Coroutine delivering a notification to a connected user
        dispatch_options: Overrides for DispatchService (clock, route_estimator,
            weather). The clock is shared with the state machine and presence tracker.
    """
    clock = dispatch_options.get("clock", utcnow)
    store = RideStore()
    notifier = Notifier(push=push)
    presence = PresenceTracker(settings, clock=clock)
    state_machine = RideStateMachine(store, notifier, settings, clock=clock)
    dispatch = DispatchService(
        store, state_machine, presence, notifier, settings, **dispatch_options
    )
    return RideServices(
        settings=settings,
        store=store,
        notifier=notifier,
        presence=presence,
        state_machine=state_machine,
        dispatch=dispatch,
    )


__all__ = [
    "Actor",
    "SYSTEM_ACTOR",
    "check_ride_read",
    "check_ride_update",
    "CategoryPricing",
    "calculate_price",
    "safe_price",
    "DispatchService",
    "PriceQuote",
    "Notifier",
    "PresenceTracker",
    "RideQuery",
    "RideSnapshot",
    "RideStore",
    "RideStateMachine",
    "Subscription",
    "SubscriptionHub",
    "RideServices",
    "build_services",
]
