"""
Command Dispatcher - the bridge across the process boundary to the engine.

The engine runs in a separate execution context and talks to us over an
asynchronous message channel. Every command is sent as a request envelope
tagged with a fresh correlation id; the reply carrying that id resolves the
caller's future. Several commands may be in flight at once and replies may
arrive in any order, so correlation is the only thing callers rely on.

Envelopes:
- request: {"correlationId", "command", "argsJson"}
- reply:   {"correlationId", "ok", "resultJson" | "errorMessage"}
- event:   {"eventType", "payloadJson"}  (unsolicited, no correlation id)

Every dispatch has a mandatory timeout. A channel failure rejects every
outstanding command at once (reset).
"""

import asyncio
import itertools
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from forgebridge.config import BridgeConfig
from forgebridge.errors import (
    ChannelError,
    DispatchTimeoutError,
    EngineReportedError,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Any], None]
StatusListener = Callable[["ConnectionStatus", str], None]


class ConnectionStatus(Enum):
    """Connection state of the engine channel."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class EngineChannel(Protocol):
    """
    Transport to the engine.

    send() delivers one serialized envelope. The channel calls the receiver
    for every inbound message and the status handler when the connection
    comes up (True) or goes away (False, reason).
    """

    async def send(self, data: str) -> None: ...

    def set_receiver(self, receiver: Callable[[str | bytes], None]) -> None: ...

    def set_status_handler(self, handler: Callable[[bool, str], None]) -> None: ...


@dataclass
class EngineReply:
    """A successful reply from the engine."""
    correlation_id: str
    command: str
    result: Any = None


@dataclass
class PendingCommand:
    """A command sent to the engine and not yet answered."""
    correlation_id: str
    command_name: str
    args: dict[str, Any]
    issued_at: float
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


def encode_request(correlation_id: str, command: str, args: dict[str, Any]) -> str:
    return json.dumps({
        "correlationId": correlation_id,
        "command": command,
        "argsJson": json.dumps(args),
    })


def encode_reply(correlation_id: str, ok: bool, result: Any = None, error: str | None = None) -> str:
    envelope: dict[str, Any] = {"correlationId": correlation_id, "ok": ok}
    if ok:
        envelope["resultJson"] = json.dumps(result)
    else:
        envelope["errorMessage"] = error or "Unknown engine error"
    return json.dumps(envelope)


def encode_event(event_type: str, payload: Any) -> str:
    return json.dumps({"eventType": event_type, "payloadJson": json.dumps(payload)})


def _decode_json_field(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value) if value else None
    return value


class CommandDispatcher:
    """
    Correlates requests and replies over an EngineChannel.

    One dispatcher is shared by every caller (UI and agent); its correlation
    id sequence is the only source of ids, so ids are unique per dispatcher.
    """

    def __init__(
        self,
        channel: EngineChannel | None = None,
        config: BridgeConfig | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self._channel: EngineChannel | None = None
        self._pending: dict[str, PendingCommand] = {}
        self._sequence = itertools.count(1)
        self._event_handlers: list[EventHandler] = []
        self._status_listeners: list[StatusListener] = []
        self.status = ConnectionStatus.DISCONNECTED
        if channel is not None:
            self.attach(channel)

    # --- Wiring ------------------------------------------------------------

    def attach(self, channel: EngineChannel, connected: bool = True) -> None:
        """Bind to a channel. In-process channels are connected immediately."""
        self._channel = channel
        channel.set_receiver(self.handle_message)
        channel.set_status_handler(self._on_channel_status)
        self._set_status(ConnectionStatus.CONNECTED if connected else ConnectionStatus.CONNECTING)

    def on_event(self, handler: EventHandler) -> None:
        """Subscribe to unsolicited engine events."""
        self._event_handlers.append(handler)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._status_listeners:
            self._status_listeners.remove(listener)

    @property
    def connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def _set_status(self, status: ConnectionStatus, reason: str = "") -> None:
        if status is self.status:
            return
        self.status = status
        logger.info(f"Engine connection {status.value}" + (f": {reason}" if reason else ""))
        for listener in list(self._status_listeners):
            try:
                listener(status, reason)
            except Exception:
                logger.exception("Connection status listener failed")

    def _on_channel_status(self, up: bool, reason: str = "") -> None:
        if up:
            self._set_status(ConnectionStatus.CONNECTED)
        else:
            self.reset(reason or "Engine connection lost")

    # --- Dispatch ----------------------------------------------------------

    def next_correlation_id(self) -> str:
        return f"cmd-{next(self._sequence)}"

    async def dispatch(
        self,
        command: str,
        args: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> EngineReply:
        """
        Send a command and wait for its reply.

        Raises EngineReportedError if the engine rejects the command,
        DispatchTimeoutError if no reply arrives in time, and ChannelError
        if the channel is down or fails while the command is outstanding.
        """
        if self._channel is None or self.status is not ConnectionStatus.CONNECTED:
            raise ChannelError(f"Cannot dispatch '{command}': engine not connected")

        args = args or {}
        timeout = timeout if timeout is not None else self.config.dispatch_timeout
        loop = asyncio.get_running_loop()
        correlation_id = self.next_correlation_id()
        pending = PendingCommand(
            correlation_id=correlation_id,
            command_name=command,
            args=args,
            issued_at=time.monotonic(),
            future=loop.create_future(),
        )
        pending.timer = loop.call_later(timeout, self._expire, correlation_id, timeout)
        pending.future.add_done_callback(
            lambda future, cid=correlation_id: self._discard(cid, future)
        )
        self._pending[correlation_id] = pending

        logger.debug(f"-> {correlation_id} {command}")
        try:
            await self._channel.send(encode_request(correlation_id, command, args))
        except ChannelError:
            self._fail(correlation_id, ChannelError(f"Failed to send '{command}'"))
            raise
        except (OSError, ConnectionError) as e:
            self._fail(correlation_id, ChannelError(f"Failed to send '{command}': {e}"))
            raise ChannelError(f"Failed to send '{command}': {e}") from e

        return await pending.future

    def _discard(self, correlation_id: str, future: asyncio.Future) -> None:
        # Runs when the future settles for any reason, including the caller
        # being cancelled while waiting.
        pending = self._pending.get(correlation_id)
        if pending is not None and pending.future is future:
            del self._pending[correlation_id]
            if pending.timer is not None:
                pending.timer.cancel()

    def _fail(self, correlation_id: str, error: Exception) -> None:
        pending = self._pending.pop(correlation_id, None)
        if pending is None:
            return
        if pending.timer is not None:
            pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_exception(error)
            # Mark retrieved for callers that have already gone away
            pending.future.exception()

    def _expire(self, correlation_id: str, timeout: float) -> None:
        pending = self._pending.get(correlation_id)
        if pending is None:
            return
        logger.warning(f"{correlation_id} {pending.command_name} timed out after {timeout:g}s")
        self._fail(
            correlation_id,
            DispatchTimeoutError(pending.command_name, correlation_id, timeout),
        )

    # --- Inbound -----------------------------------------------------------

    def handle_message(self, raw: str | bytes) -> None:
        """Route one inbound message: a reply by correlation id, or an event."""
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Ignoring malformed engine message: {e}")
            return
        if not isinstance(message, dict):
            logger.warning(f"Ignoring non-object engine message: {message!r}")
            return

        if message.get("correlationId") is not None:
            self._handle_reply(message)
        elif "eventType" in message:
            self._handle_event(message)
        else:
            logger.warning("Ignoring engine message with no correlation id or event type")

    def _handle_reply(self, message: dict[str, Any]) -> None:
        correlation_id = str(message["correlationId"])
        pending = self._pending.pop(correlation_id, None)
        if pending is None:
            logger.warning(f"Ignoring late or unknown reply {correlation_id}")
            return
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return

        elapsed = time.monotonic() - pending.issued_at
        if message.get("ok"):
            try:
                result = _decode_json_field(message.get("resultJson"))
            except json.JSONDecodeError as e:
                pending.future.set_exception(EngineReportedError(
                    pending.command_name, f"Malformed result from engine: {e}"
                ))
                return
            logger.debug(f"<- {correlation_id} {pending.command_name} ok ({elapsed * 1000:.0f}ms)")
            pending.future.set_result(EngineReply(correlation_id, pending.command_name, result))
        else:
            error = message.get("errorMessage") or "Engine reported an error"
            logger.debug(f"<- {correlation_id} {pending.command_name} failed: {error}")
            pending.future.set_exception(EngineReportedError(pending.command_name, error))

    def _handle_event(self, message: dict[str, Any]) -> None:
        event_type = str(message["eventType"])
        try:
            payload = _decode_json_field(message.get("payloadJson"))
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring event {event_type} with malformed payload: {e}")
            return
        logger.debug(f"<- event {event_type}")
        for handler in list(self._event_handlers):
            try:
                handler(event_type, payload)
            except Exception:
                logger.exception(f"Event handler failed for {event_type}")

    # --- Reset -------------------------------------------------------------

    def reset(self, reason: str = "Engine connection lost") -> int:
        """
        Reject every outstanding command with ChannelError.

        Called on connection loss or engine restart. Returns the number of
        commands rejected.
        """
        pending = list(self._pending)
        for correlation_id in pending:
            self._fail(correlation_id, ChannelError(reason))
        if pending:
            logger.error(f"Rejected {len(pending)} pending commands: {reason}")
        self._set_status(ConnectionStatus.DISCONNECTED, reason)
        return len(pending)
