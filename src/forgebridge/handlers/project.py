"""Project-level security queries."""

from typing import Any

from forgebridge.registry import HandlerContext, HandlerTable
from forgebridge.security import SecurityGate
from forgebridge.types import HandlerResult

handlers = HandlerTable()


def _gate(ctx: HandlerContext) -> SecurityGate:
    return ctx.security if ctx.security is not None else SecurityGate()


@handlers.query("get_security_status")
async def get_security_status(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    return HandlerResult.ok(_gate(ctx).status())


@handlers.query("validate_project_security")
async def validate_project_security(args: dict[str, Any], ctx: HandlerContext) -> HandlerResult:
    report = _gate(ctx).validate(ctx.store.snapshot, ctx.store.scripts)
    return HandlerResult.ok(report.to_dict())


HANDLERS = handlers.as_dict()
