"""Tests for the Bridge event loop and reconnection policy."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mqtt_notify.bridge import MAX_RESTARTS, RESTART_BACKOFF_SECONDS, Bridge, BridgeState
from mqtt_notify.connection import InboundMessage
from mqtt_notify.core import Config, EqualsSay, Mapping, NotificationRequest
from mqtt_notify.dispatcher import NotificationDispatcher
from mqtt_notify.errors import (
    ConnectError,
    PollError,
    ReconnectBudgetExceeded,
    SubscribeError,
)


def transient() -> PollError:
    return PollError("Disconnected during message iteration", transient=True)


def fatal() -> PollError:
    return PollError("boom", transient=False)


def message(payload: bytes, topic: str = "sensor/door", retained: bool = False) -> InboundMessage:
    return InboundMessage(topic=topic, payload=payload, retained=retained)


class FakeConnection:
    """Scripted ConnectionManager: each connect() starts the next script."""

    def __init__(self, *scripts: list) -> None:
        self.scripts = [list(script) for script in scripts]
        self.connect_error: BaseException | None = None
        self.subscribe_error: BaseException | None = None
        self.connects = 0
        self.closes = 0
        self.subscribed: list[list[str]] = []

    async def connect(self):
        self.connects += 1
        if self.connect_error:
            raise self.connect_error
        return self.scripts.pop(0) if self.scripts else [fatal()]

    async def subscribe_all(self, session, topics):
        self.subscribed.append(list(topics))
        if self.subscribe_error:
            raise self.subscribe_error

    async def next_event(self, session):
        item = session.pop(0) if session else fatal()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self, session):
        self.closes += 1


@pytest.fixture
def config():
    return Config(
        mqtt_broker_uri="localhost",
        message_timeout_millis=2500,
        mappings=[
            Mapping(topic="sensor/door", actions=(EqualsSay(value="open", say="Door opened!"),)),
            Mapping(topic="ci/build"),
        ],
    )


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier)


@pytest.fixture
def sleep():
    return AsyncMock()


def shown_bodies(notifier) -> list[str]:
    return [call.args[0].body for call in notifier.show.call_args_list]


class TestHandleMessage:
    """Tests for the per-message pipeline."""

    @pytest.fixture
    def dispatcher(self):
        return MagicMock(spec=NotificationDispatcher)

    def test_dispatches_decided_text(self, config, dispatcher):
        bridge = Bridge(config, FakeConnection(), dispatcher)

        assert bridge.handle_message(message(b"open")) is True

        dispatcher.dispatch.assert_called_once_with(
            NotificationRequest(summary="MQTT Notification", body="Door opened!", timeout_ms=2500)
        )

    def test_retained_ignored_when_configured(self, config, dispatcher):
        config = config.model_copy(update={"ignore_retained": True})
        bridge = Bridge(config, FakeConnection(), dispatcher)

        assert bridge.handle_message(message(b"open", retained=True)) is False
        dispatcher.dispatch.assert_not_called()

        assert bridge.handle_message(message(b"open", retained=False)) is True
        dispatcher.dispatch.assert_called_once()

    def test_retained_dispatched_by_default(self, config, dispatcher):
        bridge = Bridge(config, FakeConnection(), dispatcher)

        assert bridge.handle_message(message(b"open", retained=True)) is True
        dispatcher.dispatch.assert_called_once()

    def test_invalid_utf8_is_dropped(self, config, dispatcher, caplog):
        bridge = Bridge(config, FakeConnection(), dispatcher)

        assert bridge.handle_message(message(b"\xff\xfe\xfa")) is False

        dispatcher.dispatch.assert_not_called()
        assert "Invalid UTF-8" in caplog.text

    def test_unmapped_topic_uses_fallback(self, config, dispatcher):
        bridge = Bridge(config, FakeConnection(), dispatcher)

        bridge.handle_message(message(b"42", topic="elsewhere"))

        request = dispatcher.dispatch.call_args.args[0]
        assert request.body == "Received message: 42"


class TestRun:
    """Tests for Bridge.run() and the reconnection state machine."""

    def test_default_policy(self):
        assert MAX_RESTARTS == 10
        assert RESTART_BACKOFF_SECONDS == 60.0

    @pytest.mark.asyncio
    async def test_end_to_end(self, config, dispatcher, notifier):
        connection = FakeConnection([message(b"open"), message(b"closed"), fatal()])
        bridge = Bridge(config, connection, dispatcher)

        with pytest.raises(PollError):
            await bridge.run()
        await dispatcher.drain()

        assert connection.subscribed == [["sensor/door", "ci/build"]]
        assert shown_bodies(notifier) == ["Door opened!", "Received message: closed"]
        assert bridge.state is BridgeState.TERMINATED

    @pytest.mark.asyncio
    async def test_invalid_utf8_does_not_stop_loop(self, config, dispatcher, notifier):
        connection = FakeConnection([message(b"\xc3\x28"), message(b"open"), fatal()])
        bridge = Bridge(config, connection, dispatcher)

        with pytest.raises(PollError):
            await bridge.run()
        await dispatcher.drain()

        assert shown_bodies(notifier) == ["Door opened!"]

    @pytest.mark.asyncio
    async def test_fatal_poll_error_is_not_retried(self, config, dispatcher, sleep):
        connection = FakeConnection([fatal()], [message(b"open")])
        bridge = Bridge(config, connection, dispatcher, sleep=sleep)

        with pytest.raises(PollError) as excinfo:
            await bridge.run()

        assert excinfo.value.transient is False
        assert connection.connects == 1
        assert connection.closes == 1
        assert bridge.restart_count == 0
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_connect_error_is_fatal(self, config, dispatcher, sleep):
        connection = FakeConnection()
        connection.connect_error = ConnectError("refused")
        bridge = Bridge(config, connection, dispatcher, sleep=sleep)

        with pytest.raises(ConnectError):
            await bridge.run()

        assert connection.connects == 1
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_subscribe_error_closes_session(self, config, dispatcher, sleep):
        connection = FakeConnection([message(b"open")])
        connection.subscribe_error = SubscribeError("denied")
        bridge = Bridge(config, connection, dispatcher, sleep=sleep)

        with pytest.raises(SubscribeError):
            await bridge.run()

        assert connection.closes == 1
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_reconnects_after_transient_error(self, config, dispatcher, notifier, sleep):
        connection = FakeConnection(
            [message(b"open"), transient()],
            [message(b"closed"), fatal()],
        )
        bridge = Bridge(config, connection, dispatcher, restart_backoff=60.0, sleep=sleep)

        with pytest.raises(PollError):
            await bridge.run()
        await dispatcher.drain()

        assert connection.connects == 2
        assert connection.closes == 2
        assert connection.subscribed == [["sensor/door", "ci/build"]] * 2
        assert bridge.restart_count == 1
        sleep.assert_awaited_once_with(60.0)
        assert shown_bodies(notifier) == ["Door opened!", "Received message: closed"]

    @pytest.mark.asyncio
    async def test_gives_up_after_ceiling_plus_one_failures(self, config, dispatcher, sleep):
        ceiling = 3
        connection = FakeConnection(*[[transient()] for _ in range(ceiling + 1)])
        bridge = Bridge(config, connection, dispatcher, max_restarts=ceiling, sleep=sleep)

        with pytest.raises(ReconnectBudgetExceeded) as excinfo:
            await bridge.run()

        assert excinfo.value.restart_count == ceiling + 1
        assert isinstance(excinfo.value.__cause__, PollError)
        assert connection.connects == ceiling + 1
        assert sleep.await_count == ceiling
        assert bridge.state is BridgeState.TERMINATED

    @pytest.mark.asyncio
    async def test_keeps_running_at_ceiling(self, config, dispatcher, notifier, sleep):
        ceiling = 3
        scripts = [[transient()] for _ in range(ceiling)] + [[message(b"open"), fatal()]]
        connection = FakeConnection(*scripts)
        bridge = Bridge(config, connection, dispatcher, max_restarts=ceiling, sleep=sleep)

        with pytest.raises(PollError) as excinfo:
            await bridge.run()
        await dispatcher.drain()

        assert excinfo.value.transient is False
        assert bridge.restart_count == ceiling
        assert shown_bodies(notifier) == ["Door opened!"]

    @pytest.mark.asyncio
    async def test_restart_count_is_cumulative(self, config, dispatcher, sleep):
        """Successful reconnects in between do not reset the counter."""
        connection = FakeConnection(
            [message(b"open"), transient()],
            [message(b"open"), message(b"open"), transient()],
            [message(b"open"), transient()],
        )
        bridge = Bridge(config, connection, dispatcher, max_restarts=2, sleep=sleep)

        with pytest.raises(ReconnectBudgetExceeded):
            await bridge.run()
        await dispatcher.drain()

        assert bridge.restart_count == 3

    @pytest.mark.asyncio
    async def test_startup_notification_only_once(self, config, dispatcher, notifier, sleep):
        config = config.model_copy(update={"notify_on_startup": "Listening"})
        connection = FakeConnection([transient()], [transient()], [fatal()])
        bridge = Bridge(config, connection, dispatcher, sleep=sleep)

        with pytest.raises(PollError):
            await bridge.run()
        await dispatcher.drain()

        assert connection.connects == 3
        assert shown_bodies(notifier) == ["Listening"]
        request = notifier.show.call_args.args[0]
        assert request.timeout_ms == 2500

    @pytest.mark.asyncio
    async def test_no_startup_notification_without_text(self, config, dispatcher, notifier):
        bridge = Bridge(config, FakeConnection([fatal()]), dispatcher)

        with pytest.raises(PollError):
            await bridge.run()
        await dispatcher.drain()

        notifier.show.assert_not_called()

    @pytest.mark.asyncio
    async def test_hung_notifier_does_not_block_polling(self, config):
        release = asyncio.Event()
        shown: list[str] = []

        class SlowNotifier:
            async def show(self, request):
                await release.wait()
                shown.append(request.body)

            async def close(self):
                pass

        dispatcher = NotificationDispatcher(SlowNotifier())
        connection = FakeConnection([message(b"open"), message(b"a"), message(b"b"), fatal()])
        bridge = Bridge(config, connection, dispatcher)

        with pytest.raises(PollError):
            await bridge.run()

        assert connection.scripts == []
        assert dispatcher.pending == 3
        assert shown == []

        release.set()
        await dispatcher.drain()
        assert sorted(shown) == sorted(
            ["Door opened!", "Received message: a", "Received message: b"]
        )
