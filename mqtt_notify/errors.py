"""
Exception hierarchy for mqtt_notify.

All exceptions inherit from MqttNotifyError so callers can catch every
bridge-specific failure in one place.
"""


class MqttNotifyError(Exception):
    """Base exception for mqtt_notify."""

    pass


class ConfigError(MqttNotifyError):
    """Raised when the configuration file cannot be read or validated.

    Examples:
        - Missing or unreadable file
        - Malformed TOML/JSON
        - Only one of username/password given
    """

    pass


class ConnectError(MqttNotifyError):
    """Raised when the broker session cannot be established.

    Examples:
        - Authentication rejected
        - DNS or network failure
        - Protocol negotiation failure
    """

    pass


class SubscribeError(MqttNotifyError):
    """Raised when any configured topic cannot be subscribed."""

    pass


class PollError(MqttNotifyError):
    """Raised when waiting for the next broker event fails.

    Transient errors (connection loss, keep-alive timeout) are recovered by
    reconnecting; everything else is fatal.
    """

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ReconnectBudgetExceeded(MqttNotifyError):
    """Raised when transient failures exceed the process-wide restart ceiling."""

    def __init__(self, restart_count: int, max_restarts: int) -> None:
        super().__init__(
            f"Gave up after {restart_count} connection failures "
            f"(limit {max_restarts})"
        )
        self.restart_count = restart_count
        self.max_restarts = max_restarts


class NotificationError(MqttNotifyError):
    """Raised by a notifier when the desktop refuses a notification."""

    pass
