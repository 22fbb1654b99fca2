"""
Schema Compiler - turns manifest parameter schemas into runtime validators.

Each command's ParameterSchema is compiled once into a pydantic model.
Validation is lax in the pydantic sense (numeric strings become numbers,
ints become floats) but enum fields are a closed set and are never coerced.

Type tags the compiler does not recognise are not an error: the field
degrades to an unconstrained pass-through and a warning is logged, so a
manifest written for a newer engine never takes the bridge down.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic import ValidationError as PydanticValidationError

from forgebridge.errors import ValidationError
from forgebridge.manifest import CommandManifest, FieldSchema, ParameterSchema

logger = logging.getLogger(__name__)

_PRIMITIVES: dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
}


def _annotation_for(field_schema: FieldSchema, where: str) -> Any:
    """Python type annotation for a field schema."""
    if field_schema.enum is not None:
        if not field_schema.enum:
            logger.warning(f"{where}: empty enum, accepting any value")
            return Any
        return Literal[field_schema.enum]

    tag = field_schema.type
    if tag in _PRIMITIVES:
        return _PRIMITIVES[tag]
    if tag == "array":
        if field_schema.items is None:
            return list[Any]
        return list[_annotation_for(field_schema.items, f"{where}[]")]
    if tag == "object":
        return dict[str, Any]

    logger.warning(f"{where}: unknown schema type '{tag}', accepting any value")
    return Any


def _model_name(command: str) -> str:
    parts = re.split(r"[^a-zA-Z0-9]+", command)
    return "".join(p[:1].upper() + p[1:] for p in parts if p) + "Args"


@dataclass(frozen=True)
class Validator:
    """Compiled validator for one command."""
    command: str
    model: type[BaseModel]

    def validate(self, raw: Any) -> dict[str, Any]:
        """
        Validate and coerce raw arguments.

        Returns the validated arguments keyed by their manifest names.
        Optional fields that were absent stay absent; unknown keys are
        dropped. Raises ValidationError listing every problem found.
        """
        if raw is None:
            raw = {}
        if not isinstance(raw, Mapping):
            raise ValidationError(self.command, ["arguments must be an object"])
        try:
            parsed = self.model.model_validate(dict(raw))
        except PydanticValidationError as e:
            problems = []
            for error in e.errors():
                location = ".".join(str(part) for part in error["loc"]) or "<root>"
                problems.append(f"{location}: {error['msg']}")
            raise ValidationError(self.command, problems) from None
        return parsed.model_dump(by_alias=True, exclude_unset=True)


def compile_schema(schema: ParameterSchema, command: str = "command") -> Validator:
    """Compile a parameter schema into a Validator."""
    fields: dict[str, Any] = {}
    for index, (name, field_schema) in enumerate(schema.properties.items()):
        annotation = _annotation_for(field_schema, f"{command}.{name}")
        description = field_schema.description or None
        # Fields are stored under positional names and exposed by alias so that
        # manifest keys can never clash with BaseModel attributes.
        if name in schema.required:
            fields[f"field_{index}"] = (
                annotation,
                Field(..., alias=name, description=description),
            )
        else:
            fields[f"field_{index}"] = (
                annotation | None if annotation is not Any else Any,
                Field(None, alias=name, description=description),
            )

    model = create_model(
        _model_name(command),
        __config__=ConfigDict(extra="ignore", populate_by_name=False),
        **fields,
    )
    return Validator(command=command, model=model)


def compile_manifest(manifest: CommandManifest) -> dict[str, Validator]:
    """Compile a validator for every command in the manifest."""
    validators = {
        descriptor.name: compile_schema(descriptor.parameters, descriptor.name)
        for descriptor in manifest
    }
    logger.debug(f"Compiled {len(validators)} command validators")
    return validators
