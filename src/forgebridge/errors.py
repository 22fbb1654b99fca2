"""
Error taxonomy for the command bridge.

Four of these (validation, unknown command, timeout, engine-reported) are
per-command failures: the registry converts them into structured results and
they never cross the agent loop boundary. ChannelError is different - it
means the transport to the engine is gone, every in-flight command has been
rejected, and the agent loop must stop.
"""


class BridgeError(Exception):
    """Base class for all command bridge errors."""
    pass


class ManifestError(BridgeError):
    """The command manifest or the registry built from it is inconsistent."""
    pass


class ValidationError(BridgeError):
    """Arguments were rejected by the command's schema before dispatch."""

    def __init__(self, command: str, problems: list[str]) -> None:
        self.command = command
        self.problems = problems
        super().__init__(f"Invalid arguments for '{command}': " + "; ".join(problems))


class UnknownCommandError(BridgeError):
    """No primary or legacy handler exists for a command name."""

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"Unknown command: {command}")


class DispatchTimeoutError(BridgeError):
    """The engine did not reply within the dispatch budget."""

    def __init__(self, command: str, correlation_id: str, timeout: float) -> None:
        self.command = command
        self.correlation_id = correlation_id
        self.timeout = timeout
        super().__init__(f"Command '{command}' timed out after {timeout:g}s")


class EngineReportedError(BridgeError):
    """The engine explicitly rejected a command (e.g. invalid entity id)."""

    def __init__(self, command: str, message: str) -> None:
        self.command = command
        self.engine_message = message
        super().__init__(message)


class EntityNotFoundError(BridgeError):
    """A command referenced an entity the scene does not contain."""

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"Entity not found: {entity_id}")


class ChannelError(BridgeError):
    """Transport failure. Fatal to every outstanding command."""
    pass


class LLMError(Exception):
    """Error from the LLM client."""
    pass


class LoopCancelled(Exception):
    """Raised inside the agent loop when the cancellation token fires."""
    pass
