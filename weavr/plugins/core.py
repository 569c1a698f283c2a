"""Always-available actions; bare step names like ``log`` resolve here."""
from __future__ import annotations

import asyncio
from typing import Any, Dict

from weavr.engine.models import ActionContext, ActionDescriptor, TriggerDescriptor, TriggerMode
from weavr.engine.registry import CORE_PLUGIN, Plugin
from weavr.service.errors import ActionExecutionError
from weavr.service.sandbox import CONDITION_FUNCTIONS, evaluate_condition

MAX_DELAY_SECONDS = 3600


async def noop(ctx: ActionContext) -> Dict[str, Any]:
    return {"ok": True}


async def log(ctx: ActionContext) -> Dict[str, Any]:
    message = str(ctx.config.get("message", ""))
    ctx.log(message)
    return {"message": message}


async def transform(ctx: ActionContext) -> Any:
    # Step config is rendered before the action runs, so the value is final here.
    if "value" in ctx.config:
        return ctx.config["value"]
    return ctx.config.get("template", "")


async def delay(ctx: ActionContext) -> Dict[str, Any]:
    seconds = float(ctx.config.get("seconds", 0)) + float(ctx.config.get("ms", 0)) / 1000
    if seconds < 0 or seconds > MAX_DELAY_SECONDS:
        raise ActionExecutionError(f"delay must be between 0 and {MAX_DELAY_SECONDS} seconds")
    ctx.log(f"waiting {seconds:g}s")
    await asyncio.sleep(seconds)
    return {"waited_ms": int(seconds * 1000)}


async def condition(ctx: ActionContext) -> Dict[str, Any]:
    """Evaluate ``expression`` (or its alias ``if``) over the run context.

    The expression sees ``steps``, ``trigger``, ``env`` and ``memory``. A
    non-string value, e.g. from ``if: "{{ steps.check.ok }}"``, has already
    been resolved by the template engine and is used as is. With
    ``fail: true`` a false result fails the step, which skips its dependents.
    """
    expression = ctx.config.get("expression", ctx.config.get("if"))
    if expression is None or (isinstance(expression, str) and not expression.strip()):
        raise ActionExecutionError("condition requires an 'expression' (or 'if')")
    if isinstance(expression, str):
        try:
            value = evaluate_condition(expression, ctx.template_context(), CONDITION_FUNCTIONS)
        except (ValueError, TypeError, KeyError, ZeroDivisionError) as exc:
            raise ActionExecutionError(f"condition '{expression}' could not be evaluated: {exc}") from exc
    else:
        value = expression
    passed = bool(value)
    if not passed and ctx.config.get("fail"):
        raise ActionExecutionError(f"condition '{expression}' is false")
    return {"result": passed, "expression": expression}


def plugin() -> Plugin:
    return Plugin(
        name=CORE_PLUGIN,
        version="1.0.0",
        description="Built-in control-flow and data actions",
        actions=(
            ActionDescriptor("noop", noop, "Do nothing"),
            ActionDescriptor("log", log, "Write a message to the run log"),
            ActionDescriptor("transform", transform, "Return a rendered template or value"),
            ActionDescriptor("delay", delay, "Sleep for a number of seconds"),
            ActionDescriptor("condition", condition, "Evaluate a boolean expression"),
        ),
        triggers=(TriggerDescriptor("manual", TriggerMode.MANUAL, "Run only on explicit request"),),
    )
