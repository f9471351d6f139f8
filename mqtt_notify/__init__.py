"""mqtt-notify: desktop notifications driven by MQTT messages."""

import logging

__version__ = "0.1.0"

# Finer than DEBUG, for per-message noise
TRACE = 5
logging.addLevelName(TRACE, "TRACE")
