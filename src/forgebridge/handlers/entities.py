"""Entity commands: spawn, delete, duplicate, transform, rename, reparent, visibility."""

from typing import Any

from forgebridge.registry import HandlerContext, HandlerTable
from forgebridge.types import HandlerResult

handlers = HandlerTable()


@handlers.mutating("spawn_entity")
async def spawn_entity(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    entity_id = await ctx.store.spawn_entity(
        args["entityType"],
        name=args.get("name"),
        position=args.get("position"),
        parent_id=args.get("parentId"),
    )
    node = ctx.store.snapshot.get(entity_id)
    return HandlerResult.ok({
        "entityId": entity_id,
        "name": node.name if node else args.get("name"),
        "message": f"Spawned {args['entityType']} {entity_id}",
    })


@handlers.mutating("despawn_entity")
async def despawn_entity(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    await ctx.store.delete_entities([args["entityId"]])
    return HandlerResult.ok({"deleted": [args["entityId"]]})


@handlers.mutating("delete_entities")
async def delete_entities(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    entity_ids = args["entityIds"]
    if not entity_ids:
        return HandlerResult.fail("No entities to delete")
    await ctx.store.delete_entities(entity_ids)
    return HandlerResult.ok({"deleted": list(entity_ids)})


@handlers.mutating("duplicate_entity")
async def duplicate_entity(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    new_id = await ctx.store.duplicate_entity(args["entityId"], name=args.get("name"))
    return HandlerResult.ok({"entityId": new_id, "sourceId": args["entityId"]})


@handlers.mutating("update_transform")
async def update_transform(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    fields = {key: args[key] for key in ("position", "rotation", "scale") if args.get(key) is not None}
    if not fields:
        return HandlerResult.fail("Provide at least one of position, rotation or scale")
    for key, value in fields.items():
        if len(value) != 3:
            return HandlerResult.fail(f"{key} must have exactly 3 components")
    await ctx.store.update_transform(args["entityId"], **fields)
    return HandlerResult.ok({"entityId": args["entityId"], "updated": sorted(fields)})


@handlers.mutating("rename_entity")
async def rename_entity(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    name = args["name"].strip()
    if not name:
        return HandlerResult.fail("Name must not be empty")
    await ctx.store.rename_entity(args["entityId"], name)
    return HandlerResult.ok({"entityId": args["entityId"], "name": name})


@handlers.mutating("reparent_entity")
async def reparent_entity(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    entity_id = args["entityId"]
    new_parent_id = args.get("newParentId")
    if new_parent_id == entity_id:
        return HandlerResult.fail("An entity cannot be its own parent")
    if new_parent_id is not None and new_parent_id in ctx.store.snapshot.descendants(entity_id):
        return HandlerResult.fail("Cannot parent an entity under its own descendant")
    await ctx.store.reparent_entity(entity_id, new_parent_id, args.get("insertIndex"))
    return HandlerResult.ok({"entityId": entity_id, "parentId": new_parent_id})


@handlers.mutating("set_visibility")
async def set_visibility(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    visible = await ctx.store.set_visibility(args["entityId"], args.get("visible"))
    return HandlerResult.ok({"entityId": args["entityId"], "visible": visible})


HANDLERS = handlers.as_dict()
