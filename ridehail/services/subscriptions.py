"""
Subscription Hub
In-process change notification for ride documents and standing queries.

Every subscription owns its cancellation state and a queue drained by its
own pump task, so one subscriber sees the snapshots of a document in the
order they were published and a cancelled subscription never runs its
callback again.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

Callback = Callable[[Any], Awaitable[None]]
Loader = Callable[[], Any]

_NO_SNAPSHOT = object()


class Subscription:
    """Handle returned to subscribers; cancel() is idempotent"""

    def __init__(
        self,
        key: str,
        callback: Callback,
        loader: Optional[Loader] = None,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
    ):
        self.subscription_id = uuid.uuid4().hex
        self.key = key
        self.loader = loader
        self._callback = callback
        self._on_cancel = on_cancel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cancelled = False
        self._task = asyncio.get_running_loop().create_task(self._pump())

    @property
    def active(self) -> bool:
        return not self._cancelled

    def push(self, snapshot: Any) -> None:
        if self._cancelled:
            return
        self._queue.put_nowait(snapshot)

    def cancel(self) -> bool:
        """Stop delivery. Returns False when already cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        # release anyone blocked in flush()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        # a callback may cancel its own subscription; let the pump exit on its own
        if self._task is not asyncio.current_task():
            self._task.cancel()
        if self._on_cancel:
            self._on_cancel(self)
        return True

    async def flush(self) -> None:
        """Wait until every queued snapshot has been delivered"""
        if self._cancelled:
            return
        await self._queue.join()

    async def _pump(self) -> None:
        while not self._cancelled:
            snapshot = await self._queue.get()
            try:
                if self._cancelled:
                    break
                await self._callback(snapshot)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    f"Subscription {self.subscription_id} callback failed for {self.key}"
                )
            finally:
                self._queue.task_done()

    def __repr__(self):
        return f"Subscription({self.key}, active={self.active})"


class SubscriptionHub:
    """Registry of subscriptions keyed by topic"""

    def __init__(self):
        self._by_key: Dict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(
        self,
        key: str,
        callback: Callback,
        initial: Any = _NO_SNAPSHOT,
        loader: Optional[Loader] = None,
    ) -> Subscription:
        subscription = Subscription(key, callback, loader=loader, on_cancel=self._remove)
        self._by_key[key].add(subscription)
        if initial is not _NO_SNAPSHOT:
            subscription.push(initial)
        elif loader is not None:
            self._push_loaded(subscription)
        logger.debug(f"Subscribed {subscription.subscription_id} to {key}")
        return subscription

    def publish(self, key: str, snapshot: Any) -> int:
        """Deliver the same snapshot to every subscriber of a key"""
        subscriptions = list(self._by_key.get(key, ()))
        for subscription in subscriptions:
            subscription.push(snapshot)
        return len(subscriptions)

    def refresh(self, key: str) -> int:
        """Re-run each subscriber's own loader and deliver the result"""
        subscriptions = list(self._by_key.get(key, ()))
        for subscription in subscriptions:
            self._push_loaded(subscription)
        return len(subscriptions)

    def subscriber_count(self, key: Optional[str] = None) -> int:
        if key is not None:
            return len(self._by_key.get(key, ()))
        return sum(len(subs) for subs in self._by_key.values())

    def close(self) -> None:
        for subscriptions in list(self._by_key.values()):
            for subscription in list(subscriptions):
                subscription.cancel()
        self._by_key.clear()

    def _push_loaded(self, subscription: Subscription) -> None:
        try:
            snapshot = subscription.loader()
        except Exception:
            logger.exception(f"Failed to load snapshot for {subscription.key}")
            return
        subscription.push(snapshot)

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._by_key.get(subscription.key)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._by_key[subscription.key]
