"""
Tool Registry - the one way either caller gets anything done.

UI code and the agent loop invoke commands through the same registry, so a
command behaves the same no matter who asked for it. The registry validates
arguments against the manifest, resolves the handler and converts per-command
failures into structured results. It has no side effects of its own: it only
routes.

Resolution has two explicit tiers, both built at construction:

1. the primary map, from the handler modules' HANDLERS tables;
2. the legacy map, for engine-side commands that are forwarded unchanged.

A name in neither tier resolves to the built-in unknown-command handler.
Every manifest command must resolve to exactly one tier.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping

from forgebridge.cancellation import CancellationToken
from forgebridge.errors import (
    BridgeError,
    ChannelError,
    LoopCancelled,
    ManifestError,
    UnknownCommandError,
)
from forgebridge.manifest import CommandManifest
from forgebridge.schema import Validator, compile_manifest
from forgebridge.types import HandlerResult, ToolCall, ToolResult

logger = logging.getLogger(__name__)

Dispatch = Callable[[str, dict[str, Any]], Awaitable[Any]]


class HandlerKind(Enum):
    """What a handler does to state."""
    MUTATING = "mutating"  # Changes the document; records one history entry
    QUERY = "query"  # Read-only
    COMPOUND = "compound"  # Built from several primitives
    CONTROL = "control"  # Editor/view state and history navigation; no history
    PASSTHROUGH = "passthrough"  # Legacy: forwarded to the engine unchanged


@dataclass
class HandlerContext:
    """
    Capabilities a handler may use.

    Handlers touch the store only through its entry points and reach the
    engine only through dispatch. Long handlers should poll
    check_cancelled() between steps.
    """
    store: Any
    dispatch: Dispatch
    security: Any = None
    registry: "ToolRegistry | None" = None
    cancel_token: CancellationToken | None = None

    def check_cancelled(self) -> None:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    def with_token(self, token: CancellationToken | None) -> "HandlerContext":
        return HandlerContext(
            store=self.store,
            dispatch=self.dispatch,
            security=self.security,
            registry=self.registry,
            cancel_token=token,
        )


HandlerFn = Callable[[dict[str, Any], HandlerContext], Awaitable[HandlerResult]]


@dataclass(frozen=True)
class CommandHandler:
    """A handler bound to a command name."""
    name: str
    kind: HandlerKind
    fn: HandlerFn = field(repr=False)

    async def __call__(self, args: dict[str, Any], context: HandlerContext) -> HandlerResult:
        return await self.fn(args, context)

    @property
    def undoable(self) -> bool:
        return self.kind is HandlerKind.MUTATING


class HandlerTable:
    """
    Collects the handlers of one module.

        handlers = HandlerTable()

        @handlers.mutating("rename_entity")
        async def rename_entity(args, ctx): ...

        HANDLERS = handlers.as_dict()
    """

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}

    def register(self, name: str, kind: HandlerKind) -> Callable[[HandlerFn], HandlerFn]:
        def decorator(fn: HandlerFn) -> HandlerFn:
            if name in self._handlers:
                raise ManifestError(f"Handler registered twice: {name}")
            self._handlers[name] = CommandHandler(name=name, kind=kind, fn=fn)
            return fn
        return decorator

    def mutating(self, name: str) -> Callable[[HandlerFn], HandlerFn]:
        return self.register(name, HandlerKind.MUTATING)

    def query(self, name: str) -> Callable[[HandlerFn], HandlerFn]:
        return self.register(name, HandlerKind.QUERY)

    def compound(self, name: str) -> Callable[[HandlerFn], HandlerFn]:
        return self.register(name, HandlerKind.COMPOUND)

    def control(self, name: str) -> Callable[[HandlerFn], HandlerFn]:
        return self.register(name, HandlerKind.CONTROL)

    def passthrough(self, name: str) -> Callable[[HandlerFn], HandlerFn]:
        return self.register(name, HandlerKind.PASSTHROUGH)

    def as_dict(self) -> dict[str, CommandHandler]:
        return dict(self._handlers)


async def _unknown_command(args: dict[str, Any], context: HandlerContext) -> HandlerResult:
    return HandlerResult.fail("Unknown command")


UNKNOWN_HANDLER = CommandHandler(name="<unknown>", kind=HandlerKind.QUERY, fn=_unknown_command)


class ToolRegistry:
    """
    Manifest-validated routing from command names to handlers.

    Pass the registry by reference to whoever needs it; there is no
    module-level instance.
    """

    def __init__(
        self,
        manifest: CommandManifest,
        primary: Mapping[str, CommandHandler],
        legacy: Mapping[str, CommandHandler] | None = None,
        strict: bool = True,
    ) -> None:
        self.manifest = manifest
        self._primary = dict(primary)
        self._legacy = dict(legacy or {})
        self._validators: dict[str, Validator] = compile_manifest(manifest)

        overlap = sorted(set(self._primary) & set(self._legacy))
        if overlap:
            raise ManifestError(f"Commands registered in both tiers: {', '.join(overlap)}")

        missing = [name for name in manifest.names if self.tier(name) is None]
        if missing:
            logger.error(f"Manifest commands without handlers: {', '.join(missing)}")
            if strict:
                raise ManifestError(f"Manifest commands without handlers: {', '.join(missing)}")

        extra = sorted(n for n in [*self._primary, *self._legacy] if n not in manifest)
        if extra:
            logger.warning(f"Handlers for commands not in the manifest: {', '.join(extra)}")

        logger.debug(
            f"Registry ready: {len(self._primary)} primary, {len(self._legacy)} legacy handlers"
        )

    @classmethod
    def from_tables(
        cls,
        manifest: CommandManifest,
        primary_tables: Iterable[Mapping[str, CommandHandler]],
        legacy_table: Mapping[str, CommandHandler] | None = None,
        strict: bool = True,
    ) -> "ToolRegistry":
        """Build from several modules' HANDLERS tables."""
        primary: dict[str, CommandHandler] = {}
        for table in primary_tables:
            for name, handler in table.items():
                if name in primary:
                    raise ManifestError(f"Command handled by more than one module: {name}")
                primary[name] = handler
        return cls(manifest, primary, legacy_table, strict=strict)

    def __len__(self) -> int:
        return len(self._primary) + len(self._legacy)

    def __contains__(self, name: object) -> bool:
        return name in self._primary or name in self._legacy

    def tier(self, name: str) -> str | None:
        """Which tier handles name: "primary", "legacy" or None."""
        if name in self._primary:
            return "primary"
        if name in self._legacy:
            return "legacy"
        return None

    def resolve(self, name: str) -> CommandHandler:
        """Find the handler for name. O(1)."""
        handler = self._primary.get(name) or self._legacy.get(name)
        if handler is None:
            logger.error(f"No handler for command: {name}")
            return UNKNOWN_HANDLER
        return handler

    def validate(self, name: str, args: Any) -> dict[str, Any]:
        """Validate args for name. Raises ValidationError or UnknownCommandError."""
        validator = self._validators.get(name)
        if validator is None:
            raise UnknownCommandError(name)
        return validator.validate(args)

    def get_schemas(self) -> list[dict[str, Any]]:
        """OpenAI-format schemas for every command with a handler."""
        return self.manifest.to_tool_schemas([n for n in self.manifest.names if n in self])

    async def execute(
        self,
        name: str,
        args: Any,
        context: HandlerContext,
        call_id: str = "",
    ) -> ToolResult:
        """
        Validate, resolve and run one command.

        Per-command failures come back as a failed ToolResult. Only
        ChannelError (and cancellation) propagate.
        """
        handler = None
        try:
            validated = self.validate(name, args)
            handler = self.resolve(name)
            if handler is UNKNOWN_HANDLER:
                raise UnknownCommandError(name)
            logger.debug(f"Executing {name} via {self.tier(name)} handler")
            result = await handler(validated, context)
        except ChannelError:
            raise
        except BridgeError as e:
            logger.info(f"Command {name} failed: {e}")
            return ToolResult.failure(call_id, name, str(e))
        except asyncio.CancelledError:
            raise
        except LoopCancelled:
            raise
        except Exception as e:
            logger.exception(f"Handler for {name} raised")
            return ToolResult.failure(call_id, name, f"{type(e).__name__}: {e}")

        return ToolResult.from_handler(call_id, name, result, undoable=handler.undoable)

    async def execute_call(self, call: ToolCall, context: HandlerContext) -> ToolResult:
        return await self.execute(call.name, call.arguments, context, call_id=call.id)
