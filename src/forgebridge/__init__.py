"""
forgebridge - command bridge and tool-call execution engine for an
AI-assisted 3D editor.

Both the editor UI and an LLM agent change the live scene the same way:
through a manifest-validated tool registry whose handlers mutate an
optimistic local store and dispatch commands to the engine over an
asynchronous, correlation-id based channel.

1. Manifest-driven: every command is declared once, with its schema
2. One path: the UI and the agent share the registry and the store
3. Optimistic: the UI sees changes at once; failures are reconciled
4. Undoable: every mutation records exactly one forward/inverse pair
5. Gated: agent batches are reviewed before they run
"""

__version__ = "0.1.0"

from forgebridge.agent_loop import AgentLoop, AgentTurn, LoopResult, LoopState, PendingApproval
from forgebridge.bridge import ForgeBridge
from forgebridge.cancellation import CancellationToken
from forgebridge.config import (
    ApprovalPolicy,
    BridgeConfig,
    ContextConfig,
    ForgeConfig,
    LLMConfig,
    LoopConfig,
    ReconcilePolicy,
    SecurityConfig,
)
from forgebridge.dispatcher import CommandDispatcher, ConnectionStatus, EngineReply
from forgebridge.engine_simulator import EngineSimulator, SimulatorOptions
from forgebridge.errors import (
    BridgeError,
    ChannelError,
    DispatchTimeoutError,
    EngineReportedError,
    EntityNotFoundError,
    LLMError,
    ManifestError,
    UnknownCommandError,
    ValidationError,
)
from forgebridge.events import EventLog, EventType
from forgebridge.handlers import create_registry
from forgebridge.llm import ChatResponse, LLMClient
from forgebridge.manifest import CommandDescriptor, CommandManifest, load_manifest
from forgebridge.registry import HandlerContext, HandlerKind, ToolRegistry
from forgebridge.scene import SceneGraphSnapshot, SceneNode, ScriptData, Transform
from forgebridge.schema import compile_schema
from forgebridge.security import SecurityFinding, SecurityGate, SecurityReport
from forgebridge.store import HistoryEntry, SceneStore
from forgebridge.transport import WebSocketChannel
from forgebridge.types import HandlerResult, Message, Role, ToolCall, ToolResult

__all__ = [
    "AgentLoop",
    "AgentTurn",
    "ApprovalPolicy",
    "BridgeConfig",
    "BridgeError",
    "CancellationToken",
    "ChannelError",
    "ChatResponse",
    "CommandDescriptor",
    "CommandDispatcher",
    "CommandManifest",
    "ConnectionStatus",
    "ContextConfig",
    "DispatchTimeoutError",
    "EngineReply",
    "EngineReportedError",
    "EngineSimulator",
    "EntityNotFoundError",
    "EventLog",
    "EventType",
    "ForgeBridge",
    "ForgeConfig",
    "HandlerContext",
    "HandlerKind",
    "HandlerResult",
    "HistoryEntry",
    "LLMClient",
    "LLMConfig",
    "LLMError",
    "LoopConfig",
    "LoopResult",
    "LoopState",
    "ManifestError",
    "Message",
    "PendingApproval",
    "ReconcilePolicy",
    "Role",
    "SceneGraphSnapshot",
    "SceneNode",
    "SceneStore",
    "ScriptData",
    "SecurityConfig",
    "SecurityFinding",
    "SecurityGate",
    "SecurityReport",
    "SimulatorOptions",
    "ToolCall",
    "ToolRegistry",
    "ToolResult",
    "Transform",
    "UnknownCommandError",
    "ValidationError",
    "WebSocketChannel",
    "compile_schema",
    "create_registry",
    "load_manifest",
]
