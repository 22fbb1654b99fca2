"""
Command handler modules.

Each module exports a HANDLERS table. The primary tier is the union of the
modules in PRIMARY_MODULES; the legacy module forms the fallback tier.
"""

from forgebridge.handlers import compound, editor, entities, legacy, project, queries, scripting
from forgebridge.manifest import CommandManifest, load_manifest
from forgebridge.registry import ToolRegistry

PRIMARY_MODULES = [entities, editor, queries, scripting, compound, project]


def create_registry(manifest: CommandManifest | None = None, strict: bool = True) -> ToolRegistry:
    """Build a registry over the bundled (or given) manifest."""
    return ToolRegistry.from_tables(
        manifest if manifest is not None else load_manifest(),
        [module.HANDLERS for module in PRIMARY_MODULES],
        legacy.HANDLERS,
        strict=strict,
    )


__all__ = ["PRIMARY_MODULES", "create_registry"]
