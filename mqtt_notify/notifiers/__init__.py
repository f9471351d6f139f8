"""Platform-specific desktop notifiers."""

import sys

from mqtt_notify.notifiers.base import Notifier

# Platforms that ship a freedesktop.org notification service on the session bus
_DBUS_PLATFORMS = ("linux", "freebsd", "openbsd", "netbsd")


def get_notifier(app_name: str = "mqtt-notify") -> Notifier:
    """Return the appropriate notifier for the current platform."""
    if sys.platform.startswith(_DBUS_PLATFORMS):
        from mqtt_notify.notifiers.linux import DBusNotifier

        return DBusNotifier(app_name=app_name)
    else:
        raise RuntimeError(f"Unsupported platform: {sys.platform}")


__all__ = ["Notifier", "get_notifier"]
