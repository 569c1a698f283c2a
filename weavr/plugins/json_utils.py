from __future__ import annotations

import json
from typing import Any

from weavr.engine.models import ActionContext, ActionDescriptor
from weavr.engine.registry import Plugin
from weavr.engine.template import MISSING, resolve_path
from weavr.service.errors import ActionExecutionError


async def parse(ctx: ActionContext) -> Any:
    raw = ctx.config.get("input")
    if not isinstance(raw, str):
        # already structured, e.g. a whole-value template
        return raw
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ActionExecutionError(f"failed to parse JSON: {exc}") from exc


async def stringify(ctx: ActionContext) -> str:
    indent = 2 if ctx.config.get("pretty") else None
    return json.dumps(ctx.config.get("input"), indent=indent, default=str)


async def get(ctx: ActionContext) -> Any:
    path = ctx.config.get("path")
    if not isinstance(path, str) or not path:
        raise ActionExecutionError("json.get requires a 'path'")
    value = resolve_path(path, ctx.config.get("input"))
    if value is MISSING or value is None:
        return ctx.config.get("default")
    return value


def plugin() -> Plugin:
    return Plugin(
        name="json",
        version="1.0.0",
        description="JSON manipulation utilities",
        actions=(
            ActionDescriptor("parse", parse, "Parse a JSON string"),
            ActionDescriptor("stringify", stringify, "Serialize a value to JSON"),
            ActionDescriptor("get", get, "Read a value by dotted path"),
        ),
    )
