"""
Compound commands.

Each compound is a sequence of primitive store operations. Every primitive
records its own history entry, so a compound can be undone step by step.
A failing step does not stop the rest; the result reports which steps
succeeded. A channel failure aborts the whole compound.
"""

import logging
import math
from typing import Any

from forgebridge.errors import BridgeError, ChannelError
from forgebridge.registry import HandlerContext, HandlerTable
from forgebridge.types import HandlerResult

logger = logging.getLogger(__name__)

handlers = HandlerTable()


def compound_result(operations: list[dict[str, Any]], entity_ids: list[str], noun: str) -> HandlerResult:
    """Build the {success, partialSuccess, entityIds, operations, summary} result."""
    succeeded = sum(1 for op in operations if op["success"])
    failed = len(operations) - succeeded
    summary = f"{succeeded} of {len(operations)} {noun} succeeded"
    result = {
        "success": failed == 0,
        "partialSuccess": succeeded > 0 and failed > 0,
        "entityIds": entity_ids,
        "operations": operations,
        "summary": summary,
    }
    if succeeded == 0 and operations:
        return HandlerResult(success=False, result=result, error=summary)
    return HandlerResult.ok(result)


@handlers.compound("spawn_entities")
async def spawn_entities(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    items = args["entities"]
    if not items:
        return HandlerResult.fail("No entities to spawn")

    operations: list[dict[str, Any]] = []
    entity_ids: list[str] = []
    for index, item in enumerate(items):
        ctx.check_cancelled()
        try:
            if ctx.registry is not None:
                spawn_args = ctx.registry.validate("spawn_entity", item)
            else:
                spawn_args = dict(item)
            entity_id = await ctx.store.spawn_entity(
                spawn_args["entityType"],
                name=spawn_args.get("name"),
                position=spawn_args.get("position"),
                parent_id=spawn_args.get("parentId"),
            )
        except ChannelError:
            raise
        except (BridgeError, KeyError) as e:
            operations.append({"index": index, "command": "spawn_entity", "success": False, "error": str(e)})
            continue
        entity_ids.append(entity_id)
        operations.append({"index": index, "command": "spawn_entity", "success": True, "entityId": entity_id})

    return compound_result(operations, entity_ids, "spawns")


@handlers.compound("arrange_in_grid")
async def arrange_in_grid(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    entity_ids = args["entityIds"]
    if not entity_ids:
        return HandlerResult.fail("No entities to arrange")
    columns = args.get("columns") or math.ceil(math.sqrt(len(entity_ids)))
    if columns < 1:
        return HandlerResult.fail("columns must be at least 1")
    spacing = args.get("spacing") if args.get("spacing") is not None else 2.0
    origin = args.get("origin") or [0.0, 0.0, 0.0]
    if len(origin) != 3:
        return HandlerResult.fail("origin must have exactly 3 components")

    operations: list[dict[str, Any]] = []
    moved: list[str] = []
    for index, entity_id in enumerate(entity_ids):
        ctx.check_cancelled()
        row, column = divmod(index, columns)
        position = [origin[0] + column * spacing, origin[1], origin[2] + row * spacing]
        try:
            await ctx.store.update_transform(entity_id, position=position)
        except ChannelError:
            raise
        except BridgeError as e:
            operations.append({"entityId": entity_id, "command": "update_transform", "success": False, "error": str(e)})
            continue
        moved.append(entity_id)
        operations.append({"entityId": entity_id, "command": "update_transform", "success": True, "position": position})

    logger.debug(f"Arranged {len(moved)} entities in {columns} columns")
    return compound_result(operations, moved, "moves")


HANDLERS = handlers.as_dict()
