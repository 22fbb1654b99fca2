"""Entity scripts and the built-in script templates."""

from typing import Any

from forgebridge.registry import HandlerContext, HandlerTable
from forgebridge.types import HandlerResult

handlers = HandlerTable()

SCRIPT_TEMPLATES: dict[str, dict[str, str]] = {
    "character_controller": {
        "name": "Character Controller",
        "description": "WASD + jump movement",
        "source": """\
const SPEED = 5;
const JUMP = 6;

function onUpdate(dt) {
  const move = [0, 0, 0];
  if (forge.input.isPressed("w")) move[2] -= 1;
  if (forge.input.isPressed("s")) move[2] += 1;
  if (forge.input.isPressed("a")) move[0] -= 1;
  if (forge.input.isPressed("d")) move[0] += 1;
  forge.translate(entity.id, [move[0] * SPEED * dt, 0, move[2] * SPEED * dt]);
  if (forge.input.justPressed("space")) forge.applyImpulse(entity.id, [0, JUMP, 0]);
}
""",
    },
    "collectible": {
        "name": "Collectible",
        "description": "Rotating pickup item",
        "source": """\
function onUpdate(dt) {
  forge.rotate(entity.id, [0, 2 * dt, 0]);
}

function onCollision(other) {
  if (other.tags.includes("player")) {
    forge.emit("collected", { id: entity.id });
    forge.despawn(entity.id);
  }
}
""",
    },
    "rotating_object": {
        "name": "Rotating Object",
        "description": "Continuous Y-axis rotation",
        "source": """\
const SPEED = 1;

function onUpdate(dt) {
  forge.rotate(entity.id, [0, SPEED * dt, 0]);
}
""",
    },
    "follow_camera": {
        "name": "Follow Camera",
        "description": "Smooth camera follow with offset",
        "source": """\
const OFFSET = [0, 5, 10];
const SMOOTHING = 5;

function onUpdate(dt) {
  const target = forge.find("player");
  if (!target) return;
  const goal = target.position.map((v, i) => v + OFFSET[i]);
  const t = Math.min(1, SMOOTHING * dt);
  const next = entity.position.map((v, i) => v + (goal[i] - v) * t);
  forge.setPosition(entity.id, next);
}
""",
    },
}


@handlers.mutating("set_script")
async def set_script(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    await ctx.store.set_script(
        args["entityId"],
        args["source"],
        enabled=args.get("enabled", True),
        template=args.get("template"),
    )
    return HandlerResult.ok({"entityId": args["entityId"], "length": len(args["source"])})


@handlers.mutating("remove_script")
async def remove_script(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    if not await ctx.store.remove_script(args["entityId"]):
        return HandlerResult.fail(f"Entity {args['entityId']} has no script")
    return HandlerResult.ok({"entityId": args["entityId"]})


@handlers.mutating("apply_script_template")
async def apply_script_template(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    template = SCRIPT_TEMPLATES[args["template"]]
    await ctx.store.set_script(args["entityId"], template["source"], template=args["template"])
    return HandlerResult.ok({"entityId": args["entityId"], "template": args["template"]})


@handlers.query("get_script")
async def get_script(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    if args["entityId"] not in ctx.store.snapshot:
        return HandlerResult.fail(f"Entity not found: {args['entityId']}")
    script = ctx.store.scripts.get(args["entityId"])
    return HandlerResult.ok({
        "entityId": args["entityId"],
        "script": script.to_dict() if script else None,
    })


@handlers.query("list_script_templates")
async def list_script_templates(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    templates = [
        {"id": template_id, "name": t["name"], "description": t["description"]}
        for template_id, t in SCRIPT_TEMPLATES.items()
    ]
    return HandlerResult.ok({"templates": templates})


HANDLERS = handlers.as_dict()
