"""
mqtt-notify - Entry point.

Subscribes to MQTT topics and shows a desktop notification for each message.
"""

import argparse
import asyncio
import logging
import sys

from mqtt_notify import TRACE, __version__
from mqtt_notify.bridge import Bridge
from mqtt_notify.connection import ConnectionManager
from mqtt_notify.core import Config, Settings, load_config
from mqtt_notify.dispatcher import NotificationDispatcher
from mqtt_notify.errors import MqttNotifyError
from mqtt_notify.notifiers import get_notifier

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 5.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mqtt-notify",
        description="Show desktop notifications for MQTT messages.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log at INFO level")
    parser.add_argument("-d", "--debug", action="store_true", help="log at DEBUG level")
    parser.add_argument("-t", "--trace", action="store_true", help="log at TRACE level")
    parser.add_argument("-c", "--config", help="path to the TOML (or .json) config file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "command",
        nargs="?",
        choices=("run", "verify-config"),
        default="run",
        help="run the bridge (default) or only verify the config and exit",
    )
    return parser


def _log_level(args: argparse.Namespace, settings: Settings) -> int:
    if args.trace:
        return TRACE
    if args.debug:
        return logging.DEBUG
    if args.verbose:
        return logging.INFO
    level = logging.getLevelName(settings.log_level.upper())
    return level if isinstance(level, int) else logging.WARNING


async def run_bridge(config: Config, settings: Settings) -> None:
    """Wire the collaborators together and run until a fatal error."""
    dispatcher = NotificationDispatcher(get_notifier(settings.app_name))
    bridge = Bridge(config, ConnectionManager(config), dispatcher)
    try:
        await bridge.run()
    finally:
        await dispatcher.close(SHUTDOWN_TIMEOUT_SECONDS)


def main(argv: list[str] | None = None) -> int:
    """Run the command line interface. Returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = Settings()

    logging.basicConfig(
        level=_log_level(args, settings),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.debug(f"Arguments: {args}")

    config_path = args.config or settings.config
    if config_path is None:
        parser.error("a config file is required (--config or MQTT_NOTIFY_CONFIG)")

    try:
        config = load_config(config_path)
    except MqttNotifyError as e:
        logger.error(str(e))
        return 1

    if args.command == "verify-config":
        print(f"{config_path}: configuration OK")
        return 0

    try:
        asyncio.run(run_bridge(config, settings))
    except (MqttNotifyError, RuntimeError) as e:
        logger.error(f"Fatal: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0

    logger.info("Finished")
    return 0


if __name__ == "__main__":
    sys.exit(main())
