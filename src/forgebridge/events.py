"""
Audit log of agent runs.

Every AI-driven change should be reconstructible after the fact: which state
the loop was in, what the model proposed, what the security gate said, who
approved it and what each command returned. The log is append-only and can
be written out as JSON lines.
"""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


class EventType(Enum):
    """Types of events in the audit log."""
    USER_MESSAGE = "user_message"
    STATE_CHANGE = "state_change"
    LLM_REQUEST = "llm_request"
    LLM_RESPONSE = "llm_response"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SECURITY_REVIEW = "security_review"
    APPROVAL = "approval"
    UNDO = "undo"
    ERROR = "error"


@dataclass
class AuditEvent:
    """A single event in the audit log."""
    timestamp: datetime
    event_type: EventType
    ref_id: str
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "ref_id": self.ref_id,
            "data": self.data,
        }


@dataclass
class EventLog:
    """Append-only audit log."""
    events: list[AuditEvent] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.events)

    def append(self, event: AuditEvent) -> None:
        self.events.append(event)

    def log_event(
        self,
        event_type: EventType,
        ref_id: str = "",
        **data: Any,
    ) -> AuditEvent:
        event = AuditEvent(
            timestamp=datetime.now(UTC),
            event_type=event_type,
            ref_id=ref_id,
            data=data,
        )
        self.append(event)
        return event

    def of_type(self, event_type: EventType) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type is event_type]

    def for_ref(self, ref_id: str) -> list[AuditEvent]:
        return [e for e in self.events if e.ref_id == ref_id]

    def clear(self) -> None:
        self.events.clear()

    def to_json_lines(self) -> str:
        return "\n".join(json.dumps(e.to_dict(), default=str) for e in self.events)

    def save(self, path: Path) -> None:
        path.write_text(self.to_json_lines())

    @classmethod
    def load(cls, path: Path) -> "EventLog":
        log = cls()
        for line in path.read_text().strip().split("\n"):
            if line:
                data = json.loads(line)
                log.append(AuditEvent(
                    timestamp=datetime.fromisoformat(data["timestamp"]),
                    event_type=EventType(data["event_type"]),
                    ref_id=data["ref_id"],
                    data=data["data"],
                ))
        return log
