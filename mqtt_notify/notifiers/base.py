"""Base notifier protocol definition."""

from typing import Protocol

from mqtt_notify.core import NotificationRequest


class Notifier(Protocol):
    """Platform-agnostic desktop notification interface."""

    async def show(self, request: NotificationRequest) -> None:
        """Display a notification.

        Args:
            request: Summary, body and display timeout in milliseconds.

        Raises:
            NotificationError: If the desktop refuses the notification.
        """
        ...

    async def close(self) -> None:
        """Release any connection held by the notifier."""
        ...
