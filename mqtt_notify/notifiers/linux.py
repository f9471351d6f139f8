"""Linux D-Bus desktop notifier."""

import asyncio
import logging

from dbus_fast import BusType, Message, MessageType
from dbus_fast.aio import MessageBus

from mqtt_notify.core import NotificationRequest
from mqtt_notify.errors import NotificationError

logger = logging.getLogger(__name__)

NOTIFICATIONS_SERVICE = "org.freedesktop.Notifications"
NOTIFICATIONS_PATH = "/org/freedesktop/Notifications"


class DBusNotifier:
    """Shows notifications through org.freedesktop.Notifications."""

    def __init__(self, app_name: str = "mqtt-notify") -> None:
        self.app_name = app_name
        self._bus: MessageBus | None = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Whether a session bus connection is currently open."""
        return self._bus is not None and self._bus.connected

    async def _get_bus(self) -> MessageBus:
        # Concurrent deliveries share one connection
        async with self._lock:
            if not self.is_connected:
                self._bus = await MessageBus(bus_type=BusType.SESSION).connect()
                logger.debug("Connected to D-Bus session bus")
            assert self._bus is not None
            return self._bus

    async def show(self, request: NotificationRequest) -> None:
        """Send a Notify call and wait for the reply."""
        bus = await self._get_bus()

        # Signature: susssasa{sv}i
        # app_name, replaces_id, icon, summary, body, actions, hints, timeout
        reply = await bus.call(
            Message(
                destination=NOTIFICATIONS_SERVICE,
                path=NOTIFICATIONS_PATH,
                interface=NOTIFICATIONS_SERVICE,
                member="Notify",
                signature="susssasa{sv}i",
                body=[
                    self.app_name,
                    0,
                    "",
                    request.summary,
                    request.body,
                    [],
                    {},
                    request.timeout_ms,
                ],
            )
        )

        if reply is None or reply.message_type == MessageType.ERROR:
            detail = reply.body if reply is not None else "no reply"
            raise NotificationError(f"Notify call failed: {detail}")

        logger.debug(f"Notification shown with id {reply.body[0]}")

    async def close(self) -> None:
        """Disconnect from D-Bus."""
        if self._bus:
            self._bus.disconnect()
            self._bus = None
            logger.info("Disconnected from D-Bus")
