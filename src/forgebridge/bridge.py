"""
ForgeBridge - wires the components together.

    dispatcher <- channel (websocket or simulator)
    store      -> dispatcher (optimistic mutations), <- engine events
    registry   -> handlers -> store / dispatcher
    agent loop -> registry, security gate, model client

There are no module-level singletons: everything hangs off one ForgeBridge
instance, and the UI and the agent loop share its registry and store.
"""

import logging
from typing import Any

from forgebridge.agent_loop import AgentLoop, Approver, ChatModel
from forgebridge.config import ForgeConfig, LoopConfig
from forgebridge.context import ContextManager
from forgebridge.dispatcher import CommandDispatcher, EngineChannel
from forgebridge.engine_simulator import EngineSimulator, SimulatorOptions
from forgebridge.events import EventLog
from forgebridge.handlers import create_registry
from forgebridge.manifest import CommandManifest
from forgebridge.registry import HandlerContext
from forgebridge.security import SecurityGate, SecurityReport
from forgebridge.store import SceneStore
from forgebridge.transport import WebSocketChannel
from forgebridge.types import ToolResult

logger = logging.getLogger(__name__)


class ForgeBridge:
    """The command bridge for one editor session."""

    def __init__(
        self,
        channel: EngineChannel | None = None,
        config: ForgeConfig | None = None,
        manifest: CommandManifest | None = None,
        connected: bool = True,
    ) -> None:
        self.config = config or ForgeConfig.from_env()
        self.channel = channel
        self.dispatcher = CommandDispatcher(config=self.config.bridge)
        self.store = SceneStore(self.dispatch, policy=self.config.bridge.reconcile_policy)
        self.dispatcher.on_event(self.store.handle_engine_event)
        self.gate = SecurityGate(self.config.security)
        self.registry = create_registry(manifest)
        self.context = HandlerContext(
            store=self.store,
            dispatch=self.dispatch,
            security=self.gate,
            registry=self.registry,
        )
        self.event_log = EventLog()
        if channel is not None:
            self.dispatcher.attach(channel, connected=connected)

    @classmethod
    def simulated(
        cls,
        options: SimulatorOptions | None = None,
        config: ForgeConfig | None = None,
    ) -> "ForgeBridge":
        """A bridge talking to an in-process engine simulator."""
        return cls(EngineSimulator(options), config=config)

    async def connect(self, url: str | None = None, timeout: float | None = 10.0) -> None:
        """Connect to a real engine over WebSocket."""
        channel = WebSocketChannel(url, self.config.bridge)
        self.channel = channel
        self.dispatcher.attach(channel, connected=False)
        await channel.start()
        await channel.wait_connected(timeout)

    async def close(self) -> None:
        self.dispatcher.reset("Bridge closed")
        if isinstance(self.channel, WebSocketChannel):
            await self.channel.close()

    async def dispatch(self, command: str, args: dict[str, Any] | None = None) -> Any:
        """Send one command to the engine and return its result payload."""
        reply = await self.dispatcher.dispatch(command, args)
        return reply.result

    async def execute(self, name: str, args: dict[str, Any] | None = None) -> ToolResult:
        """Run a command on behalf of the UI."""
        return await self.registry.execute(name, args if args is not None else {}, self.context)

    def validate_project(self) -> SecurityReport:
        return self.gate.validate(self.store.snapshot, self.store.scripts)

    def create_agent(
        self,
        llm: ChatModel,
        approver: Approver | None = None,
        loop_config: LoopConfig | None = None,
    ) -> AgentLoop:
        """An agent loop sharing this bridge's registry, store and audit log."""
        return AgentLoop(
            llm=llm,
            registry=self.registry,
            context=self.context,
            config=loop_config or self.config.loop,
            gate=self.gate,
            approver=approver,
            event_log=self.event_log,
            context_manager=ContextManager(self.config.context),
        )
