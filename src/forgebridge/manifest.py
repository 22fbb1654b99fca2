"""
Command Manifest - the single source of truth for what can be done.

Every command either caller can invoke (UI panels or the model) is declared
here with a name, a description and a JSON-Schema-like parameter schema. The
manifest is loaded once and never mutated; validators and tool schemas for
the model are derived from it.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

from forgebridge.errors import ManifestError

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"

CATEGORIES = frozenset({
    "scene",
    "materials",
    "lighting",
    "environment",
    "editor",
    "camera",
    "history",
    "query",
    "runtime",
    "asset",
    "scripting",
    "audio",
    "particles",
    "export",
    "rendering",
})

# Commands in these categories never cost tokens
FREE_CATEGORIES = frozenset({"scene", "editor", "camera", "history"})

SCOPE_PATTERN = re.compile(r"^[a-z]+:(read|write)$")


@dataclass(frozen=True)
class FieldSchema:
    """Schema of a single parameter."""
    type: str
    enum: tuple[Any, ...] | None = None
    items: "FieldSchema | None" = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FieldSchema":
        enum = data.get("enum")
        items = data.get("items")
        return cls(
            type=str(data.get("type", "")),
            enum=tuple(enum) if enum is not None else None,
            items=cls.from_dict(items) if isinstance(items, Mapping) else None,
            description=data.get("description", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.enum is not None:
            data["enum"] = list(self.enum)
        if self.items is not None:
            data["items"] = self.items.to_dict()
        if self.description:
            data["description"] = self.description
        return data


@dataclass(frozen=True)
class ParameterSchema:
    """Object schema of a command's arguments."""
    properties: Mapping[str, FieldSchema] = field(
        default_factory=lambda: MappingProxyType({})
    )
    required: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ParameterSchema":
        data = data or {}
        properties = {
            name: FieldSchema.from_dict(raw)
            for name, raw in (data.get("properties") or {}).items()
        }
        return cls(
            properties=MappingProxyType(properties),
            required=tuple(data.get("required") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {name: f.to_dict() for name, f in self.properties.items()},
            "required": list(self.required),
        }


@dataclass(frozen=True)
class CommandDescriptor:
    """One command in the manifest."""
    name: str
    description: str
    parameters: ParameterSchema
    category: str = "scene"
    token_cost: int = 0
    required_scope: str = "scene:write"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CommandDescriptor":
        if "name" not in data:
            raise ManifestError(f"Command entry without a name: {data!r}")
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            parameters=ParameterSchema.from_dict(data.get("parameters")),
            category=data.get("category", "scene"),
            token_cost=int(data.get("tokenCost", 0)),
            required_scope=data.get("requiredScope", "scene:write"),
        )

    def to_tool_schema(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters.to_dict(),
            },
        }


class CommandManifest:
    """
    The loaded, read-only set of command descriptors.

    Lookup by name is O(1). Iteration preserves the declaration order of the
    manifest file.
    """

    def __init__(self, commands: list[CommandDescriptor], version: str = MANIFEST_VERSION) -> None:
        self.version = version
        self._commands: dict[str, CommandDescriptor] = {}
        for command in commands:
            if command.name in self._commands:
                raise ManifestError(f"Duplicate command name in manifest: {command.name}")
            self._commands[command.name] = command

    def __len__(self) -> int:
        return len(self._commands)

    def __iter__(self) -> Iterator[CommandDescriptor]:
        return iter(self._commands.values())

    def __contains__(self, name: object) -> bool:
        return name in self._commands

    @property
    def names(self) -> list[str]:
        return list(self._commands)

    def get(self, name: str) -> CommandDescriptor | None:
        return self._commands.get(name)

    def by_category(self, category: str) -> list[CommandDescriptor]:
        return [c for c in self._commands.values() if c.category == category]

    def validate(self) -> list[str]:
        """
        Check the metadata of every command.

        Returns a list of problems; an empty list means the manifest is sound.
        Parameter schemas are not checked here - unknown type tags are
        tolerated by the schema compiler.
        """
        problems = []
        if self.version != MANIFEST_VERSION:
            problems.append(f"Unsupported manifest version: {self.version}")
        for command in self._commands.values():
            if command.category not in CATEGORIES:
                problems.append(f"{command.name}: unknown category '{command.category}'")
            if command.token_cost < 0:
                problems.append(f"{command.name}: negative tokenCost")
            if command.category in FREE_CATEGORIES and command.token_cost != 0:
                problems.append(
                    f"{command.name}: {command.category} commands must have tokenCost 0"
                )
            if not SCOPE_PATTERN.match(command.required_scope):
                problems.append(
                    f"{command.name}: invalid requiredScope '{command.required_scope}'"
                )
            if not command.description:
                problems.append(f"{command.name}: missing description")
            for name in command.parameters.required:
                if name not in command.parameters.properties:
                    problems.append(f"{command.name}: required field '{name}' is not declared")
        return problems

    def to_tool_schemas(self, names: list[str] | None = None) -> list[dict[str, Any]]:
        """OpenAI-format tool schemas, optionally restricted to names."""
        if names is None:
            return [c.to_tool_schema() for c in self._commands.values()]
        return [self._commands[n].to_tool_schema() for n in names if n in self._commands]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CommandManifest":
        commands = [CommandDescriptor.from_dict(raw) for raw in data.get("commands", [])]
        return cls(commands, version=str(data.get("version", MANIFEST_VERSION)))


def load_manifest(path: str | Path | None = None) -> CommandManifest:
    """
    Load a manifest from a JSON file.

    With no path, the manifest bundled with the package is loaded.
    """
    try:
        if path is None:
            text = resources.files("forgebridge").joinpath("data/commands.json").read_text(
                encoding="utf-8"
            )
        else:
            text = Path(path).read_text(encoding="utf-8")
        data = json.loads(text)
    except (OSError, json.JSONDecodeError) as e:
        raise ManifestError(f"Cannot load command manifest: {e}") from e

    manifest = CommandManifest.from_dict(data)
    logger.debug(f"Loaded manifest v{manifest.version} with {len(manifest)} commands")
    return manifest
