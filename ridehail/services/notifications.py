"""
Notification Dispatcher
Fire-and-forget user notifications: stored in the notification history and
pushed to the user's WebSocket when connected. Delivery failures are logged
and never reach the ride operation that triggered them.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ridehail.models.events import NotificationEvent
from ridehail.models.notification_model import Notification

logger = logging.getLogger(__name__)

PushFn = Callable[[str, dict], Awaitable[bool]]


class Notifier:
    def __init__(self, push: Optional[PushFn] = None, persist: bool = True):
        self._push = push
        self._persist = persist
        self._tasks: Set[asyncio.Task] = set()

    def notify(
        self,
        user_id: Optional[str],
        title: str,
        body: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Schedule delivery and return immediately"""
        if not user_id:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No event loop, dropping notification '{title}' for {user_id}")
            return

        task = loop.create_task(self._deliver(user_id, title, body, metadata or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown, tests)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _deliver(
        self, user_id: str, title: str, body: str, metadata: Dict[str, Any]
    ) -> None:
        if self._persist:
            try:
                Notification(
                    user_id=user_id,
                    title=title,
                    body=body,
                    type=metadata.get("type", "default"),
                    ride_id=metadata.get("ride_id"),
                    data=metadata,
                ).save()
            except Exception as e:
                logger.error(f"Failed to store notification for {user_id}: {str(e)}")

        if self._push is None:
            return

        event = NotificationEvent(title=title, body=body, data=metadata)
        try:
            delivered = await self._push(user_id, event.model_dump(mode="json"))
            if not delivered:
                logger.debug(f"User {user_id} offline, notification '{title}' stored only")
        except Exception as e:
            logger.error(f"Failed to push notification to {user_id}: {str(e)}")
