"""
WebSocket transport to the engine.

The engine page hosts a WebSocket endpoint; this channel connects to it,
hands every inbound text frame to the dispatcher and reconnects after
reconnect_delay whenever the connection drops. Going down is reported to
the status handler, which makes the dispatcher reject everything in flight.
"""

import asyncio
import logging
from collections.abc import Callable

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from forgebridge.config import BridgeConfig
from forgebridge.errors import ChannelError

logger = logging.getLogger(__name__)


class WebSocketChannel:
    """EngineChannel over a reconnecting WebSocket client."""

    def __init__(self, url: str | None = None, config: BridgeConfig | None = None) -> None:
        self.config = config or BridgeConfig()
        self.url = url or self.config.engine_url
        self.reconnect_delay = self.config.reconnect_delay
        self._receiver: Callable[[str | bytes], None] | None = None
        self._status_handler: Callable[[bool, str], None] | None = None
        self._ws: ClientConnection | None = None
        self._connected = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._closing = False
        self.connect_count = 0

    def set_receiver(self, receiver: Callable[[str | bytes], None]) -> None:
        self._receiver = receiver

    def set_status_handler(self, handler: Callable[[bool, str], None]) -> None:
        self._status_handler = handler

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def start(self) -> None:
        """Start the connect/reconnect loop in the background."""
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: float | None = None) -> None:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except TimeoutError as e:
            raise ChannelError(f"Could not connect to engine at {self.url}") from e

    async def send(self, data: str) -> None:
        ws = self._ws
        if ws is None:
            raise ChannelError("Engine not connected")
        try:
            await ws.send(data)
        except ConnectionClosed as e:
            raise ChannelError(f"Engine connection closed: {e}") from e

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while not self._closing:
            was_up = False
            reason = "Engine closed the connection"
            try:
                async with connect(self.url) as ws:
                    self._ws = ws
                    self._connected.set()
                    self.connect_count += 1
                    was_up = True
                    logger.info(f"Connected to engine at {self.url}")
                    self._report(True, "")
                    async for message in ws:
                        self._deliver(message)
            except ConnectionClosed as e:
                reason = f"Engine connection lost: {e}"
            except (OSError, WebSocketException) as e:
                reason = f"Cannot reach engine at {self.url}: {e}"
            except Exception as e:
                logger.exception(f"Engine channel to {self.url} failed")
                reason = f"Engine channel failed: {type(e).__name__}: {e}"
            finally:
                self._ws = None
                self._connected.clear()

            if was_up:
                logger.warning(reason)
                self._report(False, reason)
            else:
                logger.debug(reason)
            if self._closing:
                break
            await asyncio.sleep(self.reconnect_delay)

    def _deliver(self, message: str | bytes) -> None:
        # Binary frames go through undecoded; the dispatcher rejects bad encodings
        if self._receiver is None:
            logger.warning("No receiver attached; engine message dropped")
            return
        self._receiver(message)

    def _report(self, up: bool, reason: str) -> None:
        if self._status_handler is not None:
            self._status_handler(up, reason)
