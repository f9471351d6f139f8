"""Fire-and-forget hand-off from the event loop to a notifier."""

import asyncio
import logging

from mqtt_notify.core import NotificationRequest
from mqtt_notify.notifiers.base import Notifier

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Runs each notification as its own asyncio task.

    `dispatch` never waits for the notifier, so a slow or hung notification
    service cannot hold up message consumption. As a consequence notifications
    may be displayed in a different order than their messages arrived.
    """

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._pending)

    def dispatch(self, request: NotificationRequest) -> None:
        """Schedule a notification and return immediately."""
        task = asyncio.create_task(self._deliver(request))
        # The event loop only keeps weak references to tasks
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, request: NotificationRequest) -> None:
        try:
            await self.notifier.show(request)
        except Exception as e:
            logger.exception(f"Error showing notification {request.body!r}: {e}")

    async def drain(self) -> None:
        """Wait for every in-flight notification to finish."""
        if self._pending:
            await asyncio.gather(*self._pending)

    async def close(self, timeout: float | None = None) -> None:
        """Drain pending deliveries (at most `timeout` seconds) and close the notifier."""
        try:
            await asyncio.wait_for(self.drain(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.pending} notification(s) still pending at shutdown")
        finally:
            await self.notifier.close()
