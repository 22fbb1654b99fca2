"""
Legacy tier: engine-side commands the primary modules do not model.

Materials, lighting, environment, physics, audio, particles and animation
live entirely in the engine; the store mirrors none of it. These commands
are forwarded with their validated arguments unchanged. A few catalogue
queries are answered locally. Success is decided from the raw command name.
"""

import logging
from typing import Any

from forgebridge.registry import HandlerContext, HandlerTable
from forgebridge.types import HandlerResult

logger = logging.getLogger(__name__)

FORWARDED_COMMANDS = frozenset({
    "update_material",
    "apply_material_preset",
    "update_light",
    "update_ambient_light",
    "update_environment",
    "set_skybox",
    "update_post_processing",
    "update_physics",
    "toggle_physics",
    "apply_force",
    "set_audio",
    "play_audio",
    "stop_audio",
    "set_particle",
    "toggle_particle",
    "play_animation",
    "stop_animation",
})

MATERIAL_PRESETS = [
    {"id": "default_gray", "name": "Default Gray", "category": "basic"},
    {"id": "matte_white", "name": "Matte White", "category": "basic"},
    {"id": "matte_black", "name": "Matte Black", "category": "basic"},
    {"id": "clay", "name": "Clay", "category": "basic"},
    {"id": "plastic_basic", "name": "Plastic", "category": "basic"},
    {"id": "polished_metal", "name": "Polished Metal", "category": "metal"},
    {"id": "brushed_metal", "name": "Brushed Metal", "category": "metal"},
    {"id": "gold", "name": "Gold", "category": "metal"},
    {"id": "silver", "name": "Silver", "category": "metal"},
    {"id": "copper", "name": "Copper", "category": "metal"},
    {"id": "concrete", "name": "Concrete", "category": "natural"},
    {"id": "marble", "name": "Marble", "category": "natural"},
]

SHADERS = [
    {"type": "dissolve", "name": "Dissolve", "description": "Dissolve / burn away effect with glowing edges"},
    {"type": "hologram", "name": "Hologram", "description": "Holographic scan lines with transparency"},
    {"type": "force_field", "name": "Force Field", "description": "Energy shield with Fresnel glow and noise"},
    {"type": "lava_flow", "name": "Lava / Flow", "description": "Flowing liquid with scrolling UVs and distortion"},
    {"type": "toon", "name": "Toon", "description": "Cel-shaded cartoon bands"},
    {"type": "fresnel_glow", "name": "Fresnel Glow", "description": "Rim lighting glow effect"},
]

LOCAL_RESULTS: dict[str, Any] = {
    "list_material_presets": {"presets": MATERIAL_PRESETS, "count": len(MATERIAL_PRESETS)},
    "list_shaders": {"shaders": SHADERS, "count": len(SHADERS)},
}


async def execute_legacy(name: str, args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    """Run a legacy command by its raw name."""
    if name in LOCAL_RESULTS:
        return HandlerResult.ok(LOCAL_RESULTS[name])

    entity_id = args.get("entityId")
    if entity_id is not None and entity_id not in ctx.store.snapshot:
        return HandlerResult.fail(f"Entity not found: {entity_id}")
    if name == "apply_material_preset" and args["presetId"] not in {p["id"] for p in MATERIAL_PRESETS}:
        return HandlerResult.fail(f"Unknown material preset: {args['presetId']}")

    logger.debug(f"Forwarding legacy command {name}")
    result = await ctx.dispatch(name, args)
    return HandlerResult.ok(result if result is not None else {"applied": name})


def _passthrough(name: str):
    async def forward(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
        return await execute_legacy(name, args, ctx)

    forward.__name__ = name
    return forward


handlers = HandlerTable()
for _name in sorted(FORWARDED_COMMANDS | set(LOCAL_RESULTS)):
    handlers.passthrough(_name)(_passthrough(_name))

HANDLERS = handlers.as_dict()
