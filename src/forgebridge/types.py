"""
Core types shared by the registry, the dispatcher and the agent loop.

These are the structures that flow across component boundaries. They are
kept deliberately plain so that both callers - UI code and the agent loop -
see exactly the same shapes.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class Message:
    """A single message in the agent conversation."""
    role: Role
    content: str
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        result: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
        }
        if self.name is not None:
            result["name"] = self.name
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.tool_calls is not None:
            result["tool_calls"] = self.tool_calls
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Create from OpenAI API format."""
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            name=data.get("name"),
            tool_call_id=data.get("tool_call_id"),
            tool_calls=data.get("tool_calls"),
        )


@dataclass
class ToolCall:
    """
    A request to run one command.

    Issued by the model during an agent turn, or synthesised by UI code
    for the direct path. Both go through the same registry.
    """
    id: str
    name: str
    arguments: dict[str, Any]

    def to_api_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments),
            },
        }


@dataclass
class HandlerResult:
    """What a command handler returns: success plus a payload or an error."""
    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, result: Any = None) -> "HandlerResult":
        return cls(success=True, result=result)

    @classmethod
    def fail(cls, error: str) -> "HandlerResult":
        return cls(success=False, error=error)


@dataclass
class ToolResult:
    """
    The outcome of executing a command, as surfaced to the caller.

    For the model this is rendered as exactly one text block per tool call
    (see to_text); for UI callers the structured fields are used directly.
    """
    tool_call_id: str
    command: str
    success: bool
    result: Any = None
    error: str | None = None
    undoable: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return not self.success

    @classmethod
    def from_handler(
        cls,
        tool_call_id: str,
        command: str,
        handler_result: HandlerResult,
        undoable: bool = False,
    ) -> "ToolResult":
        return cls(
            tool_call_id=tool_call_id,
            command=command,
            success=handler_result.success,
            result=handler_result.result,
            error=handler_result.error,
            undoable=undoable and handler_result.success,
        )

    @classmethod
    def failure(cls, tool_call_id: str, command: str, error: str) -> "ToolResult":
        return cls(tool_call_id=tool_call_id, command=command, success=False, error=error)

    def to_text(self) -> str:
        """Render as the single text block fed back to the model."""
        if not self.success:
            return f"Error: {self.error or 'Unknown error'}"
        if self.result is None:
            return "Success"
        if isinstance(self.result, str):
            return self.result
        return json.dumps(self.result, indent=2, default=str)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.success and self.result is not None:
            data["result"] = self.result
        if not self.success:
            data["result"] = self.error
            data["isError"] = True
        return data
