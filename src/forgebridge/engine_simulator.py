"""
Engine Simulator - an in-process stand-in for the game engine.

Speaks the same envelopes as the real engine over the EngineChannel
protocol, so the dispatcher, store and agent loop can be exercised without
a browser or a socket. It keeps its own authoritative scene and applies
document commands with the same apply_command the store uses, then pushes a
scene_graph_update event like the engine does.

Knobs for testing the failure modes of a real channel:
- latency: per-command reply delay in seconds
- drop_commands: commands that never get a reply (timeouts)
- fail_commands: commands answered with ok=false
- hold(): queue replies until release(), optionally in a different order
- disconnect(): report the channel as down
"""

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from forgebridge.dispatcher import encode_event, encode_reply
from forgebridge.errors import ChannelError
from forgebridge.scene import (
    DOCUMENT_COMMANDS,
    SceneGraphSnapshot,
    ScriptData,
    apply_command,
)

logger = logging.getLogger(__name__)

# Commands with no document effect that the engine simply acknowledges.
ACKNOWLEDGED_COMMANDS = frozenset({
    "select_entity",
    "select_entities",
    "clear_selection",
    "set_gizmo_mode",
    "set_camera_preset",
    "focus_camera",
    "update_material",
    "apply_material_preset",
    "update_light",
    "update_ambient_light",
    "update_environment",
    "set_skybox",
    "update_post_processing",
    "update_physics",
    "toggle_physics",
    "apply_force",
    "set_audio",
    "play_audio",
    "stop_audio",
    "set_particle",
    "toggle_particle",
    "play_animation",
    "stop_animation",
})

MODE_COMMANDS = {"play": "play", "stop": "edit", "pause": "paused", "resume": "play"}


@dataclass
class SimulatorOptions:
    """Behaviour of the simulated engine."""
    latency: dict[str, float] = field(default_factory=dict)
    default_latency: float = 0.0
    drop_commands: set[str] = field(default_factory=set)
    fail_commands: dict[str, str] = field(default_factory=dict)
    push_scene_updates: bool = True


class EngineSimulator:
    """In-process EngineChannel backed by a simulated engine."""

    def __init__(self, options: SimulatorOptions | None = None) -> None:
        self.options = options or SimulatorOptions()
        self.snapshot = SceneGraphSnapshot()
        self.scripts: dict[str, ScriptData] = {}
        self.mode = "edit"
        self.sent: list[dict[str, Any]] = []
        self.connected = True
        self._receiver: Callable[[str], None] | None = None
        self._status_handler: Callable[[bool, str], None] | None = None
        self._holding = False
        self._held: list[str] = []
        self._tasks: set[asyncio.Task] = set()

    # --- EngineChannel -----------------------------------------------------

    def set_receiver(self, receiver: Callable[[str], None]) -> None:
        self._receiver = receiver

    def set_status_handler(self, handler: Callable[[bool, str], None]) -> None:
        self._status_handler = handler

    async def send(self, data: str) -> None:
        if not self.connected:
            raise ChannelError("Simulated engine is disconnected")
        envelope = json.loads(data)
        self.sent.append(envelope)
        task = asyncio.create_task(self._process(envelope))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # --- Test controls -----------------------------------------------------

    @property
    def commands(self) -> list[str]:
        """Names of every command received, in order."""
        return [envelope["command"] for envelope in self.sent]

    def args_of(self, index: int) -> dict[str, Any]:
        return json.loads(self.sent[index]["argsJson"])

    def hold(self) -> None:
        """Queue outgoing replies instead of delivering them."""
        self._holding = True

    def release(self, order: list[int] | None = None) -> None:
        """Deliver held replies, in arrival order or by the given indexes."""
        held, self._held = self._held, []
        self._holding = False
        for index in order if order is not None else range(len(held)):
            self._deliver(held[index])

    @property
    def held_count(self) -> int:
        return len(self._held)

    def disconnect(self, reason: str = "Engine restarted") -> None:
        self.connected = False
        self._held.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._status_handler is not None:
            self._status_handler(False, reason)

    def reconnect(self) -> None:
        self.connected = True
        if self._status_handler is not None:
            self._status_handler(True, "")

    def push_event(self, event_type: str, payload: Any) -> None:
        self._deliver(encode_event(event_type, payload))

    def push_scene(self) -> None:
        self.push_event("scene_graph_update", self.snapshot.to_dict())

    def load(self, snapshot: SceneGraphSnapshot, scripts: dict[str, ScriptData] | None = None) -> None:
        self.snapshot = snapshot.copy()
        self.scripts = dict(scripts or {})

    # --- Engine ------------------------------------------------------------

    async def _process(self, envelope: dict[str, Any]) -> None:
        command = envelope["command"]
        correlation_id = envelope["correlationId"]
        delay = self.options.latency.get(command, self.options.default_latency)
        if delay:
            await asyncio.sleep(delay)
        if not self.connected:
            return
        if command in self.options.drop_commands:
            logger.debug(f"Simulator dropping {correlation_id} {command}")
            return

        if command in self.options.fail_commands:
            reply = encode_reply(correlation_id, False, error=self.options.fail_commands[command])
            self._reply(reply)
            return

        args = json.loads(envelope.get("argsJson") or "{}")
        ok, result, error = self._execute(command, args)
        self._reply(encode_reply(correlation_id, ok, result=result, error=error))
        if ok and command in DOCUMENT_COMMANDS and self.options.push_scene_updates:
            self.push_scene()

    def _execute(self, command: str, args: dict[str, Any]) -> tuple[bool, Any, str | None]:
        if command in DOCUMENT_COMMANDS:
            error = apply_command(self.snapshot, self.scripts, command, args)
            if error is not None:
                return False, None, error
            return True, {"applied": command}, None

        if command in MODE_COMMANDS:
            self.mode = MODE_COMMANDS[command]
            return True, {"mode": self.mode}, None

        if command in ACKNOWLEDGED_COMMANDS:
            entity_id = args.get("entityId")
            if entity_id is not None and entity_id not in self.snapshot:
                return False, None, f"Entity not found: {entity_id}"
            return True, {"applied": command}, None

        return False, None, f"Unknown command: {command}"

    def _reply(self, reply: str) -> None:
        if self._holding:
            self._held.append(reply)
        else:
            self._deliver(reply)

    def _deliver(self, message: str) -> None:
        if self._receiver is None:
            logger.warning("Simulator has no receiver; message dropped")
            return
        self._receiver(message)
