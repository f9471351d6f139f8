"""Event loop: poll the broker, decide the text, hand off the notification.

The bridge drives everything from a single asyncio loop:

1) Connect and subscribe to every mapped topic (failures are fatal)
2) On the first successful connect only, show the startup notification
3) Poll messages one at a time, in broker order
4) Drop retained messages when configured, drop payloads that are not UTF-8
5) Pick the text with `decide` and dispatch without waiting for the display

A transient polling failure closes the session, waits a fixed backoff and goes
back to step 1. The restart counter is cumulative for the whole process and
the bridge gives up once it exceeds `max_restarts`.
"""

import asyncio
import enum
import logging
from typing import Awaitable, Callable

from mqtt_notify import TRACE
from mqtt_notify.connection import ConnectionManager, InboundMessage, Session
from mqtt_notify.core import Config, NotificationRequest
from mqtt_notify.dispatcher import NotificationDispatcher
from mqtt_notify.errors import PollError, ReconnectBudgetExceeded
from mqtt_notify.rules import decide

logger = logging.getLogger(__name__)

MAX_RESTARTS = 10
RESTART_BACKOFF_SECONDS = 60.0

SleepFunc = Callable[[float], Awaitable[None]]


class BridgeState(enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    TERMINATED = "terminated"


class Bridge:
    """Connects the broker session to the notification dispatcher."""

    def __init__(
        self,
        config: Config,
        connection: ConnectionManager,
        dispatcher: NotificationDispatcher,
        *,
        max_restarts: int = MAX_RESTARTS,
        restart_backoff: float = RESTART_BACKOFF_SECONDS,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.config = config
        self.connection = connection
        self.dispatcher = dispatcher
        self.max_restarts = max_restarts
        self.restart_backoff = restart_backoff
        self._sleep = sleep

        self.state = BridgeState.CONNECTING
        self.restart_count = 0
        self._announced = False

    async def run(self) -> None:
        """Run until a fatal error or the restart budget is exhausted."""
        try:
            while True:
                session = await self._open_session()
                try:
                    await self._consume(session)
                except PollError as error:
                    if not error.transient:
                        raise
                    failure = error
                finally:
                    await self.connection.close(session)

                self.restart_count += 1
                if self.restart_count > self.max_restarts:
                    raise ReconnectBudgetExceeded(self.restart_count, self.max_restarts) from failure

                self.state = BridgeState.RECONNECTING
                logger.warning(
                    f"Lost connection ({failure}); restart {self.restart_count}/"
                    f"{self.max_restarts} in {self.restart_backoff:g}s"
                )
                await self._sleep(self.restart_backoff)
        finally:
            self.state = BridgeState.TERMINATED

    async def _open_session(self) -> Session:
        session = await self.connection.connect()
        try:
            await self.connection.subscribe_all(session, self.config.topics)
        except BaseException:
            await self.connection.close(session)
            raise

        self.state = BridgeState.CONNECTED
        if not self._announced:
            self._announced = True
            if self.config.notify_on_startup is not None:
                self._notify(self.config.notify_on_startup)
        return session

    async def _consume(self, session: Session) -> None:
        while True:
            message = await self.connection.next_event(session)
            self.handle_message(message)

    def handle_message(self, message: InboundMessage) -> bool:
        """Process one inbound publish. Returns whether a notification was dispatched."""
        if message.retained and self.config.ignore_retained:
            logger.log(TRACE, f"Ignoring retained message on {message.topic}")
            return False

        try:
            text = message.payload.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.error(f"Invalid UTF-8 received on {message.topic}: {e} (payload={message.payload!r})")
            return False

        logger.info(f"Received message on {message.topic}: {text!r}")
        self._notify(decide(self.config, message.topic, text))
        return True

    def _notify(self, body: str) -> None:
        self.dispatcher.dispatch(
            NotificationRequest(body=body, timeout_ms=self.config.message_timeout_millis)
        )
