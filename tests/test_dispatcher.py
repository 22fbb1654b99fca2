"""
Tests for the CommandDispatcher: correlation, timeouts, events and reset.
"""

import asyncio
import json

import pytest

from forgebridge.config import BridgeConfig
from forgebridge.dispatcher import (
    CommandDispatcher,
    ConnectionStatus,
    encode_event,
    encode_reply,
)
from forgebridge.errors import ChannelError, DispatchTimeoutError, EngineReportedError


class FakeChannel:
    """Records outbound envelopes; replies are injected by the test."""

    def __init__(self):
        self.sent: list[dict] = []
        self.receiver = None
        self.status_handler = None
        self.broken = False

    async def send(self, data: str) -> None:
        if self.broken:
            raise ConnectionError("broken pipe")
        self.sent.append(json.loads(data))

    def set_receiver(self, receiver) -> None:
        self.receiver = receiver

    def set_status_handler(self, handler) -> None:
        self.status_handler = handler


async def settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def dispatcher(channel):
    return CommandDispatcher(channel, BridgeConfig(dispatch_timeout=1.0))


class TestEnvelopes:
    """Wire format of requests, replies and events."""

    @pytest.mark.asyncio
    async def test_request_envelope(self, dispatcher, channel):
        task = asyncio.create_task(dispatcher.dispatch("rename_entity", {"entityId": "e1", "name": "A"}))
        await settle()
        envelope = channel.sent[0]
        assert set(envelope) == {"correlationId", "command", "argsJson"}
        assert envelope["command"] == "rename_entity"
        assert json.loads(envelope["argsJson"]) == {"entityId": "e1", "name": "A"}

        channel.receiver(encode_reply(envelope["correlationId"], True, {"renamed": True}))
        reply = await task
        assert reply.result == {"renamed": True}
        assert reply.command == "rename_entity"

    def test_reply_encoding(self):
        ok = json.loads(encode_reply("cmd-1", True, [1, 2]))
        assert ok == {"correlationId": "cmd-1", "ok": True, "resultJson": "[1, 2]"}
        failed = json.loads(encode_reply("cmd-2", False, error="bad id"))
        assert failed == {"correlationId": "cmd-2", "ok": False, "errorMessage": "bad id"}

    def test_correlation_ids_unique(self, dispatcher):
        ids = {dispatcher.next_correlation_id() for _ in range(100)}
        assert len(ids) == 100


class TestCorrelation:
    """Replies resolve exactly the request that carries their id."""

    @pytest.mark.asyncio
    async def test_out_of_order_replies(self, dispatcher, channel):
        first = asyncio.create_task(dispatcher.dispatch("get_a"))
        second = asyncio.create_task(dispatcher.dispatch("get_b"))
        await settle()
        id_a, id_b = channel.sent[0]["correlationId"], channel.sent[1]["correlationId"]
        assert dispatcher.in_flight == 2

        channel.receiver(encode_reply(id_b, True, "B"))
        channel.receiver(encode_reply(id_a, True, "A"))

        assert (await first).result == "A"
        assert (await second).result == "B"
        assert dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_engine_error(self, dispatcher, channel):
        task = asyncio.create_task(dispatcher.dispatch("rename_entity", {"entityId": "nope"}))
        await settle()
        channel.receiver(encode_reply(channel.sent[0]["correlationId"], False, error="Entity not found: nope"))
        with pytest.raises(EngineReportedError) as info:
            await task
        assert info.value.engine_message == "Entity not found: nope"
        assert info.value.command == "rename_entity"

    @pytest.mark.asyncio
    async def test_timeout_then_late_reply(self, dispatcher, channel, caplog):
        with pytest.raises(DispatchTimeoutError) as info:
            await dispatcher.dispatch("slow_command", timeout=0.05)
        assert info.value.timeout == 0.05
        assert dispatcher.in_flight == 0

        # The late reply is dropped without disturbing anything
        channel.receiver(encode_reply(channel.sent[0]["correlationId"], True, "too late"))
        assert dispatcher.in_flight == 0
        assert "late or unknown reply" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_reply_ignored(self, dispatcher, channel):
        channel.receiver(encode_reply("cmd-999", True, None))
        assert dispatcher.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancelled_caller_is_forgotten(self, dispatcher, channel):
        task = asyncio.create_task(dispatcher.dispatch("get_a"))
        await settle()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert dispatcher.in_flight == 0


class TestConnection:
    """Channel failures reject every outstanding command."""

    @pytest.mark.asyncio
    async def test_dispatch_while_disconnected(self, channel):
        dispatcher = CommandDispatcher()
        with pytest.raises(ChannelError):
            await dispatcher.dispatch("undo")
        dispatcher.attach(channel, connected=False)
        assert dispatcher.status is ConnectionStatus.CONNECTING
        with pytest.raises(ChannelError):
            await dispatcher.dispatch("undo")

    @pytest.mark.asyncio
    async def test_reset_rejects_all_pending(self, dispatcher, channel):
        statuses = []
        dispatcher.add_status_listener(lambda status, reason: statuses.append((status, reason)))
        tasks = [asyncio.create_task(dispatcher.dispatch(f"cmd_{i}")) for i in range(3)]
        await settle()

        assert dispatcher.reset("Engine restarted") == 3
        for task in tasks:
            with pytest.raises(ChannelError, match="Engine restarted"):
                await task
        assert dispatcher.in_flight == 0
        assert statuses == [(ConnectionStatus.DISCONNECTED, "Engine restarted")]

    @pytest.mark.asyncio
    async def test_channel_down_resets(self, dispatcher, channel):
        task = asyncio.create_task(dispatcher.dispatch("get_a"))
        await settle()
        channel.status_handler(False, "socket closed")
        with pytest.raises(ChannelError):
            await task
        assert not dispatcher.connected

        channel.status_handler(True, "")
        assert dispatcher.connected

    @pytest.mark.asyncio
    async def test_send_failure(self, dispatcher, channel):
        channel.broken = True
        with pytest.raises(ChannelError, match="broken pipe"):
            await dispatcher.dispatch("get_a")
        assert dispatcher.in_flight == 0

    def test_remove_status_listener(self, dispatcher):
        seen = []
        listener = lambda status, reason: seen.append(status)  # noqa: E731
        dispatcher.add_status_listener(listener)
        dispatcher.remove_status_listener(listener)
        dispatcher.reset()
        assert seen == []


class TestEvents:
    """Unsolicited engine events."""

    def test_event_routed_to_handlers(self, dispatcher, channel):
        seen = []
        dispatcher.on_event(lambda event_type, payload: seen.append((event_type, payload)))
        channel.receiver(encode_event("engine_mode_changed", {"mode": "play"}))
        assert seen == [("engine_mode_changed", {"mode": "play"})]

    def test_failing_handler_does_not_stop_others(self, dispatcher, channel):
        seen = []

        def broken(event_type, payload):
            raise RuntimeError("boom")

        dispatcher.on_event(broken)
        dispatcher.on_event(lambda event_type, payload: seen.append(event_type))
        channel.receiver(encode_event("selection_changed", {}))
        assert seen == ["selection_changed"]

    def test_malformed_messages_ignored(self, dispatcher, channel, caplog):
        channel.receiver("{not json")
        channel.receiver("[1, 2, 3]")
        channel.receiver(json.dumps({"hello": "world"}))
        assert dispatcher.in_flight == 0
        assert "malformed" in caplog.text
