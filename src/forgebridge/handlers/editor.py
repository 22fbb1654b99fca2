"""
Editor, camera, history and play-mode commands.

None of these touch the document, so none of them record history. Undo and
redo navigate the history the mutating commands recorded.
"""

from typing import Any

from forgebridge.registry import HandlerContext, HandlerTable
from forgebridge.types import HandlerResult

handlers = HandlerTable()

# command -> (modes it may be issued from, resulting mode)
MODE_TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "play": (frozenset({"edit"}), "play"),
    "stop": (frozenset({"play", "paused"}), "edit"),
    "pause": (frozenset({"play"}), "paused"),
    "resume": (frozenset({"paused"}), "play"),
}


@handlers.control("select_entity")
async def select_entity(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    selected = await ctx.store.select_entity(args["entityId"], args.get("mode", "replace"))
    return HandlerResult.ok({"selectedIds": selected})


@handlers.control("select_entities")
async def select_entities(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    selected = await ctx.store.select_entities(args["entityIds"])
    return HandlerResult.ok({"selectedIds": selected})


@handlers.control("clear_selection")
async def clear_selection(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    await ctx.store.clear_selection()
    return HandlerResult.ok({"selectedIds": []})


@handlers.control("set_gizmo_mode")
async def set_gizmo_mode(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    await ctx.store.set_gizmo_mode(args["mode"])
    return HandlerResult.ok({"mode": args["mode"]})


@handlers.control("set_camera_preset")
async def set_camera_preset(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    await ctx.store.set_camera_preset(args["preset"])
    return HandlerResult.ok({"preset": args["preset"]})


@handlers.control("focus_camera")
async def focus_camera(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    entity_id = args["entityId"]
    if entity_id not in ctx.store.snapshot:
        return HandlerResult.fail(f"Entity not found: {entity_id}")
    await ctx.dispatch("focus_camera", {"entityId": entity_id})
    return HandlerResult.ok({"entityId": entity_id})


@handlers.control("undo")
async def undo(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    entry = await ctx.store.undo()
    if entry is None:
        return HandlerResult.fail("Nothing to undo")
    return HandlerResult.ok({"undone": entry.label})


@handlers.control("redo")
async def redo(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    entry = await ctx.store.redo()
    if entry is None:
        return HandlerResult.fail("Nothing to redo")
    return HandlerResult.ok({"redone": entry.label})


def _mode_handler(command: str):
    allowed, target = MODE_TRANSITIONS[command]

    async def change_mode(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
        current = ctx.store.editor.engine_mode
        if current not in allowed:
            return HandlerResult.fail(f"Cannot {command} while in {current} mode")
        await ctx.store.set_engine_mode(command, target)
        return HandlerResult.ok({"mode": target})

    change_mode.__name__ = command
    return change_mode


for _command in MODE_TRANSITIONS:
    handlers.control(_command)(_mode_handler(_command))


HANDLERS = handlers.as_dict()
