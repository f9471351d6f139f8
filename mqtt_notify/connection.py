"""Broker session lifecycle: connect, subscribe, and poll for messages."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

import aiomqtt
from paho.mqtt.enums import MQTTErrorCode
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties
from paho.mqtt.reasoncodes import ReasonCode
from paho.mqtt.subscribeoptions import SubscribeOptions

from mqtt_notify.core import Config
from mqtt_notify.errors import ConnectError, PollError, SubscribeError

logger = logging.getLogger(__name__)

# "At most once"
SUBSCRIBE_QOS = 0

# Client error codes that mean the network went away rather than the session being refused
_TRANSIENT_ERROR_CODES = {
    MQTTErrorCode.MQTT_ERR_NO_CONN,
    MQTTErrorCode.MQTT_ERR_CONN_LOST,
    MQTTErrorCode.MQTT_ERR_KEEPALIVE,
}

# v5 DISCONNECT reasons sent by a broker that will come back
_TRANSIENT_DISCONNECT_REASONS = {
    "Server busy",
    "Server shutting down",
    "Keep alive timeout",
}

ClientFactory = Callable[..., aiomqtt.Client]


@dataclass(frozen=True)
class InboundMessage:
    """A publish received from the broker."""

    topic: str
    payload: bytes
    retained: bool


class Session:
    """An entered aiomqtt client. Only the ConnectionManager touches it."""

    def __init__(self, client: aiomqtt.Client) -> None:
        self.client = client
        self.messages = client.messages


def _reason_value(code: Any) -> int:
    return int(getattr(code, "value", code))


def _is_transient_code(rc: Any) -> bool:
    if isinstance(rc, ReasonCode):
        return (
            rc.packetType == PacketTypes.DISCONNECT
            and rc.getName() in _TRANSIENT_DISCONNECT_REASONS
        )
    try:
        return MQTTErrorCode(rc) in _TRANSIENT_ERROR_CODES
    except (TypeError, ValueError):
        return False


def is_transient(error: BaseException) -> bool:
    """Whether a poll failure is worth a reconnect."""
    if isinstance(error, aiomqtt.MqttCodeError):
        return _is_transient_code(error.rc)
    if isinstance(error, aiomqtt.MqttReentrantError):
        return False
    if isinstance(error, aiomqtt.MqttError):
        # Raised as "Disconnected during message iteration"
        return True
    return isinstance(error, (OSError, asyncio.TimeoutError))


class ConnectionManager:
    """Owns the broker session on behalf of the bridge."""

    def __init__(self, config: Config, client_factory: ClientFactory = aiomqtt.Client):
        self.config = config
        self._client_factory = client_factory

    def _client_kwargs(self) -> dict[str, Any]:
        properties = Properties(PacketTypes.CONNECT)
        properties.SessionExpiryInterval = self.config.session_expiry_interval

        kwargs: dict[str, Any] = {
            "hostname": self.config.mqtt_broker_uri,
            "port": self.config.mqtt_broker_port,
            "keepalive": self.config.session_expiry_interval,
            "protocol": aiomqtt.ProtocolVersion.V5,
            "clean_start": True,
            "properties": properties,
        }
        if self.config.mqtt_username is not None and self.config.mqtt_password is not None:
            kwargs["username"] = self.config.mqtt_username
            kwargs["password"] = self.config.mqtt_password.get_secret_value()
        return kwargs

    async def connect(self) -> Session:
        """Open a session to the broker."""
        address = f"{self.config.mqtt_broker_uri}:{self.config.mqtt_broker_port}"
        try:
            client = self._client_factory(**self._client_kwargs())
            await client.__aenter__()
        except (aiomqtt.MqttError, OSError, asyncio.TimeoutError) as e:
            raise ConnectError(f"Unable to connect to {address}: {e}") from e
        logger.info(f"MQTT connected to {address}")
        return Session(client)

    async def subscribe_all(self, session: Session, topics: list[str]) -> None:
        """Subscribe to every topic in order; any failure fails the whole call."""
        for topic in topics:
            options = SubscribeOptions(qos=SUBSCRIBE_QOS, retainAsPublished=True)
            try:
                granted = await session.client.subscribe(topic, options=options)
            except (aiomqtt.MqttError, OSError, asyncio.TimeoutError) as e:
                raise SubscribeError(f"Failed to subscribe to {topic!r}: {e}") from e
            for code in granted or ():
                if _reason_value(code) >= 0x80:
                    raise SubscribeError(
                        f"Broker rejected subscription to {topic!r}: {code}"
                    )
        logger.info(f"MQTT subscribed to {topics}")

    async def next_event(self, session: Session) -> InboundMessage:
        """Wait for the next publish from the broker."""
        try:
            message = await anext(session.messages)
        except StopAsyncIteration as e:
            raise PollError("Message stream ended", transient=True) from e
        except Exception as e:
            raise PollError(f"Error while polling: {e}", transient=is_transient(e)) from e

        return InboundMessage(
            topic=message.topic.value,
            payload=bytes(message.payload or b""),
            retained=bool(message.retain),
        )

    async def close(self, session: Session) -> None:
        """Leave the client context, tolerating an already-dead connection."""
        try:
            await session.client.__aexit__(None, None, None)
        except aiomqtt.MqttError as e:
            logger.debug(f"Error while closing MQTT session: {e}")
