"""
Tests for the WebSocket channel against a local websockets server.
"""

import asyncio
import json

import pytest
from websockets.asyncio.server import serve

from forgebridge.bridge import ForgeBridge
from forgebridge.dispatcher import ConnectionStatus, encode_event, encode_reply
from forgebridge.errors import ChannelError, EngineReportedError
from forgebridge.transport import WebSocketChannel


class FakeEngine:
    """Echoes every command back; a few command names behave specially."""

    def __init__(self, drop_first: bool = False) -> None:
        self.drop_first = drop_first
        self.connections = 0
        self.received: list[dict] = []

    async def handler(self, ws) -> None:
        self.connections += 1
        if self.drop_first and self.connections == 1:
            await ws.close()
            return
        async for raw in ws:
            request = json.loads(raw)
            self.received.append(request)
            correlation_id = request["correlationId"]
            args = json.loads(request["argsJson"])
            if request["command"] == "explode":
                await ws.send(encode_reply(correlation_id, False, error="Kaboom"))
                continue
            if request["command"] == "garble":
                await ws.send(b"\x80\x81\x82")
                await ws.send(encode_reply(correlation_id, True, {"binary": True}).encode())
                continue
            if request["command"] == "announce":
                await ws.send(encode_event("engine_mode_changed", {"mode": "play"}))
            await ws.send(encode_reply(correlation_id, True, {"echo": args}))


async def _until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _url(server) -> str:
    port = server.sockets[0].getsockname()[1]
    return f"ws://127.0.0.1:{port}"


class TestWebSocketChannel:

    @pytest.mark.asyncio
    async def test_round_trip(self, forge_config):
        engine = FakeEngine()
        async with serve(engine.handler, "127.0.0.1", 0) as server:
            bridge = ForgeBridge(config=forge_config)
            await bridge.connect(_url(server), timeout=2.0)
            try:
                assert bridge.dispatcher.connected
                result = await bridge.dispatch("get_mode", {"verbose": True})
                assert result == {"echo": {"verbose": True}}
                assert engine.received[0]["command"] == "get_mode"
            finally:
                await bridge.close()

    @pytest.mark.asyncio
    async def test_engine_error_reply(self, forge_config):
        engine = FakeEngine()
        async with serve(engine.handler, "127.0.0.1", 0) as server:
            bridge = ForgeBridge(config=forge_config)
            await bridge.connect(_url(server), timeout=2.0)
            try:
                with pytest.raises(EngineReportedError, match="Kaboom"):
                    await bridge.dispatch("explode")
            finally:
                await bridge.close()

    @pytest.mark.asyncio
    async def test_events_reach_the_store(self, forge_config):
        engine = FakeEngine()
        async with serve(engine.handler, "127.0.0.1", 0) as server:
            bridge = ForgeBridge(config=forge_config)
            await bridge.connect(_url(server), timeout=2.0)
            try:
                await bridge.dispatch("announce")
                assert bridge.store.editor.engine_mode == "play"
            finally:
                await bridge.close()

    @pytest.mark.asyncio
    async def test_binary_frames_do_not_kill_the_channel(self, forge_config):
        engine = FakeEngine()
        statuses = []
        async with serve(engine.handler, "127.0.0.1", 0) as server:
            bridge = ForgeBridge(config=forge_config)
            bridge.dispatcher.add_status_listener(lambda status, reason: statuses.append(status))
            await bridge.connect(_url(server), timeout=2.0)
            try:
                assert await bridge.dispatch("garble") == {"binary": True}
                assert await bridge.dispatch("ping") == {"echo": {}}
                assert bridge.dispatcher.connected
                assert bridge.channel.connect_count == 1
                assert ConnectionStatus.DISCONNECTED not in statuses
            finally:
                await bridge.close()

    @pytest.mark.asyncio
    async def test_reconnects_after_engine_drops(self, forge_config):
        engine = FakeEngine(drop_first=True)
        statuses = []
        async with serve(engine.handler, "127.0.0.1", 0) as server:
            bridge = ForgeBridge(config=forge_config)
            bridge.dispatcher.add_status_listener(lambda status, reason: statuses.append(status))
            await bridge.connect(_url(server), timeout=2.0)
            try:
                await _until(lambda: bridge.channel.connect_count == 2 and bridge.dispatcher.connected)
                assert statuses[-2:] == [ConnectionStatus.DISCONNECTED, ConnectionStatus.CONNECTED]
                assert await bridge.dispatch("ping") == {"echo": {}}
            finally:
                await bridge.close()

    @pytest.mark.asyncio
    async def test_unreachable_engine(self, forge_config):
        async with serve(FakeEngine().handler, "127.0.0.1", 0) as server:
            url = _url(server)
        bridge = ForgeBridge(config=forge_config)
        try:
            with pytest.raises(ChannelError, match="Could not connect"):
                await bridge.connect(url, timeout=0.2)
            assert bridge.channel.connect_count == 0
            assert not bridge.dispatcher.connected
        finally:
            await bridge.close()

    @pytest.mark.asyncio
    async def test_send_before_connect(self):
        channel = WebSocketChannel("ws://127.0.0.1:9")
        assert not channel.connected
        with pytest.raises(ChannelError):
            await channel.send("{}")
