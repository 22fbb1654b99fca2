"""Read-only queries over the store. Answered locally, never dispatched."""

from typing import Any

from forgebridge.registry import HandlerContext, HandlerTable
from forgebridge.types import HandlerResult

handlers = HandlerTable()


@handlers.query("get_scene_graph")
async def get_scene_graph(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    snapshot = ctx.store.snapshot
    entities = [
        {
            "entityId": node.entity_id,
            "name": node.name,
            "parentId": node.parent_id,
            "visible": node.visible,
            "children": list(node.children),
            "components": list(node.component_tags),
        }
        for node in snapshot.nodes.values()
    ]
    return HandlerResult.ok({
        "entities": entities,
        "rootIds": list(snapshot.root_ids),
        "count": len(entities),
    })


@handlers.query("get_entity_details")
async def get_entity_details(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    node = ctx.store.snapshot.get(args["entityId"])
    if node is None:
        return HandlerResult.fail(f"Entity not found: {args['entityId']}")
    details = node.to_dict()
    script = ctx.store.scripts.get(node.entity_id)
    details["script"] = (
        {"enabled": script.enabled, "template": script.template, "length": len(script.source)}
        if script else None
    )
    details["selected"] = node.entity_id in ctx.store.editor.selected_ids
    return HandlerResult.ok(details)


@handlers.query("get_selection")
async def get_selection(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    editor = ctx.store.editor
    return HandlerResult.ok({
        "selectedIds": list(editor.selected_ids),
        "primaryId": editor.primary_id,
    })


@handlers.query("get_camera_state")
async def get_camera_state(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    editor = ctx.store.editor
    return HandlerResult.ok({"preset": editor.camera_preset, "gizmoMode": editor.gizmo_mode})


@handlers.query("get_mode")
async def get_mode(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    return HandlerResult.ok({"mode": ctx.store.editor.engine_mode})


@handlers.query("get_history")
async def get_history(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    store = ctx.store
    return HandlerResult.ok({
        "canUndo": store.can_undo,
        "canRedo": store.can_redo,
        "undoDescription": store.undo_description,
        "redoDescription": store.redo_description,
        "undoDepth": len(store.undo_stack),
        "redoDepth": len(store.redo_stack),
    })


HANDLERS = handlers.as_dict()
