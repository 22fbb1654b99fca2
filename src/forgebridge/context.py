"""
Context for the model: scene summary and a fixed token budget.

describe_scene() renders the store as a compact text block that is put in
the system prompt each turn, so the model always sees the current
hierarchy, selection and history.

ContextManager enforces the token budget by dropping the oldest messages
after the system message. This is naive truncation: information is lost.
"""

import logging
from dataclasses import dataclass
from typing import Any

from forgebridge.config import ContextConfig
from forgebridge.types import Message, Role

logger = logging.getLogger(__name__)

MAX_LISTED_ENTITIES = 50


def describe_scene(store: Any, max_entities: int = MAX_LISTED_ENTITIES) -> str:
    """Compact text summary of the scene for the system prompt."""
    snapshot = store.snapshot
    lines = [f"Scene: {len(snapshot)} entities"]

    listed = 0

    def walk(entity_id: str, depth: int) -> None:
        nonlocal listed
        if listed >= max_entities:
            return
        node = snapshot.nodes.get(entity_id)
        if node is None:
            return
        listed += 1
        flags = []
        if not node.visible:
            flags.append("hidden")
        if entity_id in store.scripts:
            flags.append("scripted")
        if entity_id in store.editor.selected_ids:
            flags.append("selected")
        kind = ",".join(node.component_tags) or "Empty"
        suffix = f" [{', '.join(flags)}]" if flags else ""
        position = ", ".join(f"{v:g}" for v in node.transform.position)
        lines.append(f"{'  ' * (depth + 1)}- {node.name} ({entity_id}) {kind} at ({position}){suffix}")
        for child_id in node.children:
            walk(child_id, depth + 1)

    for root_id in snapshot.root_ids:
        walk(root_id, 0)
    if len(snapshot) > listed:
        lines.append(f"  ... {len(snapshot) - listed} more")

    editor = store.editor
    lines.append(f"Selection: {', '.join(editor.selected_ids) or 'none'}")
    lines.append(f"Mode: {editor.engine_mode}, gizmo: {editor.gizmo_mode}")
    if store.can_undo:
        lines.append(f"Last change: {store.undo_description}")
    return "\n".join(lines)


@dataclass
class ContextBudget:
    """Tracks token budget usage."""
    total_budget: int
    used: int
    available: int

    @property
    def utilization(self) -> float:
        """Percentage of budget used."""
        return self.used / self.total_budget if self.total_budget > 0 else 0.0


class ContextManager:
    """Keeps the conversation within a fixed token budget."""

    def __init__(self, config: ContextConfig | None = None) -> None:
        self.config = config or ContextConfig()
        self.dropped_total = 0

    def estimate_tokens(self, text: str) -> int:
        """Rough token estimate (chars / chars_per_token)."""
        return int(len(text) / self.config.chars_per_token)

    def estimate_message_tokens(self, message: Message) -> int:
        tokens = self.estimate_tokens(message.content) + 4
        if message.name:
            tokens += self.estimate_tokens(message.name)
        if message.tool_calls:
            tokens += self.estimate_tokens(str(message.tool_calls))
        return tokens

    def build_context(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> tuple[list[dict[str, Any]], ContextBudget]:
        """
        Messages for the API call, oldest dropped first when over budget.

        The first system message is always kept. A tool result is never
        kept without the assistant message that requested it.
        """
        tool_tokens = self.estimate_tokens(str(tools)) if tools else 0

        system_message: Message | None = None
        conversation: list[Message] = []
        for msg in messages:
            if msg.role == Role.SYSTEM and system_message is None:
                system_message = msg
            else:
                conversation.append(msg)

        system_tokens = self.estimate_message_tokens(system_message) if system_message else 0
        available = self.config.available_budget - tool_tokens - system_tokens

        kept: list[Message] = []
        kept_tokens = 0
        for msg in reversed(conversation):
            msg_tokens = self.estimate_message_tokens(msg)
            if kept_tokens + msg_tokens > available:
                break
            kept.insert(0, msg)
            kept_tokens += msg_tokens

        while kept and kept[0].role == Role.TOOL:
            kept_tokens -= self.estimate_message_tokens(kept.pop(0))

        dropped = len(conversation) - len(kept)
        if dropped:
            self.dropped_total += dropped
            logger.warning(f"Context truncation: dropped {dropped} messages")

        final = ([system_message] if system_message else []) + kept
        used = system_tokens + kept_tokens + tool_tokens
        budget = ContextBudget(
            total_budget=self.config.available_budget,
            used=used,
            available=self.config.available_budget - used,
        )
        return [m.to_dict() for m in final], budget
