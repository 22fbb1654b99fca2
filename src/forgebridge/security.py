"""
Security Gate - advisory checks over the scene and over AI-proposed batches.

The gate is a pure function of a snapshot and a script table: it never
mutates anything and it never raises for a finding. Findings are data
(SecurityFinding) with a severity; a report is healthy when every finding
is low severity.

Checks:
- entity names with special characters (low) or prompt-injection phrases (medium)
- dangling asset references and parent references (medium)
- scripts attached to entities that no longer exist (low)
- disallowed script APIs such as eval (high, once per script)
- oversized scripts (medium)
- pathological entity counts (low)

review_batch() folds the script sources and entity names an AI turn
proposes into a copy of the state, runs the same checks, and applies the
configured ApprovalPolicy to decide whether the batch is blocked.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from forgebridge.config import ApprovalPolicy, SecurityConfig
from forgebridge.scene import SceneGraphSnapshot, ScriptData, apply_command
from forgebridge.types import ToolCall

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Issue kinds
SUSPICIOUS_NAME = "suspicious_name"
PROMPT_INJECTION = "prompt_injection"
DANGLING_ASSET = "dangling_asset"
DANGLING_REFERENCE = "dangling_reference"
ORPHANED_SCRIPT = "orphaned_script"
DISALLOWED_API = "disallowed_api"
SCRIPT_SIZE = "script_size"
RESOURCE_COUNT = "resource_count"

MAX_NAME_LENGTH = 64
MAX_CHAT_INPUT = 4000

# Script APIs the sandbox must never see
DISALLOWED_SCRIPT_PATTERNS: dict[str, str] = {
    "eval": r"eval\s*\(",
    "function_call": r"Function\s*\(",
    "new_function": r"new\s+Function",
    "proto_access": r"__proto__",
    "constructor_index": r"constructor\s*\[",
}

PROMPT_INJECTION_PATTERNS: list[str] = [
    r"ignore\s+(all\s+)?(previous|above|system|prior)\s+(instructions?|prompts?|rules?|commands?)",
    r"ignore\s+above",
    r"forget\s+(everything|all|instructions?|context)",
    r"new\s+(instruction|rule|prompt|system|role):",
    r"you\s+are\s+now\s+",
    r"system\s*:\s*",
    r"\[system\]",
    r"<\|im_start\|>",
    r"<\|im_end\|>",
    r"\{\{.*system.*\}\}",
]

_COMPILED_SCRIPT_PATTERNS = {
    name: re.compile(pattern, re.IGNORECASE)
    for name, pattern in DISALLOWED_SCRIPT_PATTERNS.items()
}
_COMPILED_INJECTION = [re.compile(p, re.IGNORECASE) for p in PROMPT_INJECTION_PATTERNS]
_NAME_DISALLOWED = re.compile(r"[^a-zA-Z0-9\s\-_]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


def sanitize_entity_name(name: Any) -> str:
    """Strip everything but letters, digits, spaces, hyphens and underscores."""
    if not isinstance(name, str):
        return "Entity"
    sanitized = _NAME_DISALLOWED.sub("", name)
    sanitized = re.sub(r"\s+", " ", sanitized)[:MAX_NAME_LENGTH].strip()
    return sanitized or "Entity"


def detect_prompt_injection(text: Any) -> bool:
    if not isinstance(text, str):
        return False
    return any(pattern.search(text) for pattern in _COMPILED_INJECTION)


def sanitize_chat_input(text: Any) -> str:
    """Remove control characters, cap the length and trim."""
    if not isinstance(text, str):
        return ""
    return _CONTROL_CHARS.sub("", text)[:MAX_CHAT_INPUT].strip()


def find_disallowed_api(source: str) -> str | None:
    """Name of the first disallowed pattern found in source, or None."""
    for name, pattern in _COMPILED_SCRIPT_PATTERNS.items():
        if pattern.search(source):
            return name
    return None


@dataclass(frozen=True)
class SecurityFinding:
    """One advisory finding."""
    issue_kind: str
    severity: Severity
    message: str
    affected_entity_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "issueKind": self.issue_kind,
            "severity": self.severity.value,
            "message": self.message,
            "affectedEntityIds": list(self.affected_entity_ids),
        }


@dataclass
class SecurityReport:
    """Result of one validation pass."""
    issues: list[SecurityFinding] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return all(issue.severity is Severity.LOW for issue in self.issues)

    @property
    def kinds(self) -> set[str]:
        return {issue.issue_kind for issue in self.issues}

    def for_entities(self, entity_ids: Iterable[str]) -> list[SecurityFinding]:
        wanted = set(entity_ids)
        return [i for i in self.issues if wanted.intersection(i.affected_entity_ids)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "issues": [issue.to_dict() for issue in self.issues],
            "stats": dict(self.stats),
        }


@dataclass
class BatchReview:
    """The gate's verdict on a batch of proposed tool calls."""
    report: SecurityReport
    blocked: bool = False
    reason: str = ""
    annotations: dict[str, list[SecurityFinding]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "blocked": self.blocked,
            "reason": self.reason,
            "report": self.report.to_dict(),
            "annotations": {
                call_id: [f.to_dict() for f in findings]
                for call_id, findings in self.annotations.items()
            },
        }


def _entity_ids_of(call: ToolCall, placeholder: str) -> list[str]:
    args = call.arguments or {}
    ids = []
    if isinstance(args.get("entityId"), str):
        ids.append(args["entityId"])
    if isinstance(args.get("entityIds"), list):
        ids.extend(e for e in args["entityIds"] if isinstance(e, str))
    if call.name == "spawn_entity":
        ids.append(placeholder)
    elif call.name == "spawn_entities" and isinstance(args.get("entities"), list):
        ids.extend(f"{placeholder}.{index}" for index in range(len(args["entities"])))
    return ids


class SecurityGate:
    """Runs the battery of checks and applies the approval policy."""

    def __init__(self, config: SecurityConfig | None = None) -> None:
        self.config = config or SecurityConfig()

    def status(self) -> dict[str, Any]:
        """The active security settings."""
        return {
            "cspEnabled": self.config.csp_enabled,
            "corsEnabled": self.config.cors_enabled,
            "rateLimitEnabled": self.config.rate_limit_enabled,
            "sandboxEnabled": self.config.sandbox_enabled,
            "maxRequestSize": self.config.max_request_size,
            "approvalPolicy": self.config.approval_policy.value,
            "criticalFindings": sorted(self.config.critical_kinds),
        }

    def validate(
        self,
        snapshot: SceneGraphSnapshot,
        scripts: Mapping[str, ScriptData],
    ) -> SecurityReport:
        report = SecurityReport()
        suspicious = self._check_names(snapshot, report)
        self._check_references(snapshot, scripts, report)
        oversized, disallowed = self._check_scripts(scripts, report)
        self._check_counts(snapshot, report)
        report.stats = {
            "totalEntities": len(snapshot),
            "totalScripts": len(scripts),
            "suspiciousNames": suspicious,
            "oversizedScripts": oversized,
            "disallowedScripts": disallowed,
        }
        if report.issues:
            logger.debug(f"Security validation found {len(report.issues)} issues")
        return report

    def _check_names(self, snapshot: SceneGraphSnapshot, report: SecurityReport) -> int:
        suspicious = 0
        for node in snapshot.nodes.values():
            sanitized = sanitize_entity_name(node.name)
            if sanitized != node.name and sanitized != "Entity":
                report.issues.append(SecurityFinding(
                    issue_kind=SUSPICIOUS_NAME,
                    severity=Severity.LOW,
                    message=f'Entity "{node.name}" contains special characters',
                    affected_entity_ids=(node.entity_id,),
                ))
                suspicious += 1
            if detect_prompt_injection(node.name):
                report.issues.append(SecurityFinding(
                    issue_kind=PROMPT_INJECTION,
                    severity=Severity.MEDIUM,
                    message=f'Entity "{node.name}" contains suspicious patterns',
                    affected_entity_ids=(node.entity_id,),
                ))
        return suspicious

    def _check_references(
        self,
        snapshot: SceneGraphSnapshot,
        scripts: Mapping[str, ScriptData],
        report: SecurityReport,
    ) -> None:
        for node in snapshot.nodes.values():
            if node.parent_id is not None and node.parent_id not in snapshot:
                report.issues.append(SecurityFinding(
                    issue_kind=DANGLING_REFERENCE,
                    severity=Severity.MEDIUM,
                    message=f'Entity "{node.name}" references missing parent {node.parent_id}',
                    affected_entity_ids=(node.entity_id,),
                ))
            if node.asset_ref is not None and node.asset_ref not in snapshot.asset_ids:
                report.issues.append(SecurityFinding(
                    issue_kind=DANGLING_ASSET,
                    severity=Severity.MEDIUM,
                    message=f'Entity "{node.name}" references missing asset {node.asset_ref}',
                    affected_entity_ids=(node.entity_id,),
                ))
        for entity_id in scripts:
            if entity_id not in snapshot:
                report.issues.append(SecurityFinding(
                    issue_kind=ORPHANED_SCRIPT,
                    severity=Severity.LOW,
                    message=f"Script attached to missing entity {entity_id}",
                    affected_entity_ids=(entity_id,),
                ))

    def _check_scripts(
        self,
        scripts: Mapping[str, ScriptData],
        report: SecurityReport,
    ) -> tuple[int, int]:
        oversized = disallowed = 0
        for entity_id, script in scripts.items():
            size = len(script.source.encode("utf-8"))
            if size > self.config.max_script_bytes:
                report.issues.append(SecurityFinding(
                    issue_kind=SCRIPT_SIZE,
                    severity=Severity.MEDIUM,
                    message=f"Script is {size} bytes (limit {self.config.max_script_bytes})",
                    affected_entity_ids=(entity_id,),
                ))
                oversized += 1
            # One finding per script
            pattern = find_disallowed_api(script.source)
            if pattern is not None:
                report.issues.append(SecurityFinding(
                    issue_kind=DISALLOWED_API,
                    severity=Severity.HIGH,
                    message=(
                        "Script contains potentially unsafe pattern: "
                        f"{DISALLOWED_SCRIPT_PATTERNS[pattern]}"
                    ),
                    affected_entity_ids=(entity_id,),
                ))
                disallowed += 1
        return oversized, disallowed

    def _check_counts(self, snapshot: SceneGraphSnapshot, report: SecurityReport) -> None:
        if len(snapshot) > self.config.max_entities:
            report.issues.append(SecurityFinding(
                issue_kind=RESOURCE_COUNT,
                severity=Severity.LOW,
                message=f"Scene contains {len(snapshot)} entities (may impact performance)",
            ))

    # --- Batch review ------------------------------------------------------

    def should_block(self, report: SecurityReport) -> tuple[bool, str]:
        policy = self.config.approval_policy
        if policy is ApprovalPolicy.ADVISORY:
            return False, ""
        if policy is ApprovalPolicy.BLOCK_CRITICAL:
            critical = sorted(report.kinds & self.config.critical_kinds)
            if critical:
                return True, f"Blocked by security policy: {', '.join(critical)}"
            return False, ""
        serious = sorted({i.issue_kind for i in report.issues if i.severity is not Severity.LOW})
        if serious:
            return True, f"Blocked by security policy: {', '.join(serious)}"
        return False, ""

    def review_batch(
        self,
        calls: list[ToolCall],
        snapshot: SceneGraphSnapshot,
        scripts: Mapping[str, ScriptData],
    ) -> BatchReview:
        """
        Review proposed calls before they are dispatched.

        Only findings introduced by the batch are considered: issues that
        already exist in the current state are not held against it.
        """
        projected = snapshot.copy()
        projected_scripts = {eid: ScriptData(**s.to_dict()) for eid, s in scripts.items()}
        placeholders: dict[str, str] = {}
        for call in calls:
            placeholders[call.id] = f"proposed:{call.id}"
            self._project(call, placeholders[call.id], projected, projected_scripts)

        baseline = {f for f in self.validate(snapshot, scripts).issues}
        after = self.validate(projected, projected_scripts)
        report = SecurityReport(
            issues=[f for f in after.issues if f not in baseline],
            stats=after.stats,
        )
        blocked, reason = self.should_block(report)

        review = BatchReview(report=report, blocked=blocked, reason=reason)
        for call in calls:
            findings = report.for_entities(_entity_ids_of(call, placeholders[call.id]))
            if findings:
                review.annotations[call.id] = findings
        if report.issues:
            logger.info(
                f"Batch review: {len(report.issues)} new findings"
                + (f", blocked ({reason})" if blocked else "")
            )
        return review

    def _project(
        self,
        call: ToolCall,
        placeholder: str,
        snapshot: SceneGraphSnapshot,
        scripts: dict[str, ScriptData],
    ) -> None:
        args = dict(call.arguments or {})
        if call.name == "spawn_entity":
            args.setdefault("entityId", placeholder)
        elif call.name == "spawn_entities":
            for index, item in enumerate(args.get("entities") or []):
                if isinstance(item, dict):
                    self._project(
                        ToolCall(id=f"{call.id}.{index}", name="spawn_entity", arguments=item),
                        f"{placeholder}.{index}",
                        snapshot,
                        scripts,
                    )
            return
        elif call.name == "apply_script_template":
            return
        elif call.name == "set_script" and "entityId" in args and args["entityId"] not in snapshot:
            # Unknown target; still analyse the source
            scripts[args["entityId"]] = ScriptData(source=str(args.get("source", "")))
            return
        try:
            apply_command(snapshot, scripts, call.name, args)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Cannot project {call.name} for review: {e}")
