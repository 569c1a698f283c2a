from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from weavr.engine.models import ActionContext, ActionDescriptor, TriggerDescriptor, TriggerMode, utcnow
from weavr.engine.registry import Plugin
from weavr.service.errors import ActionExecutionError

PREVIEW_COUNT = 5


def _expression(config: Mapping[str, Any]) -> str:
    expression = config.get("expression") or config.get("cron")
    if not isinstance(expression, str) or not expression.strip():
        raise ValueError("cron trigger requires an 'expression'")
    if not croniter.is_valid(expression):
        raise ValueError(f"invalid cron expression '{expression}'")
    return expression.strip()


def _zone(config: Mapping[str, Any]) -> Optional[ZoneInfo]:
    name = config.get("timezone")
    if not name:
        return None
    try:
        return ZoneInfo(str(name))
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"unknown timezone '{name}'") from exc


def fire_times(config: Mapping[str, Any], after: datetime, count: int) -> List[datetime]:
    """Next ``count`` fire times strictly after ``after``, as UTC datetimes."""
    expression = _expression(config)
    zone = _zone(config)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    start = after.astimezone(zone) if zone else after.astimezone(timezone.utc)
    schedule = croniter(expression, start)
    return [schedule.get_next(datetime).astimezone(timezone.utc) for _ in range(count)]


def next_fire(config: Mapping[str, Any], after: datetime) -> datetime:
    return fire_times(config, after, 1)[0]


async def next_runs(ctx: ActionContext) -> Dict[str, Any]:
    count = int(ctx.config.get("count", PREVIEW_COUNT))
    try:
        times = fire_times(ctx.config, utcnow(), count)
    except ValueError as exc:
        raise ActionExecutionError(str(exc)) from exc
    return {
        "expression": _expression(ctx.config),
        "timezone": ctx.config.get("timezone") or "UTC",
        "nextRuns": [moment.isoformat() for moment in times],
    }


def plugin() -> Plugin:
    return Plugin(
        name="cron",
        version="1.0.0",
        description="Scheduled triggers using cron expressions",
        actions=(ActionDescriptor("next", next_runs, "List the next fire times of a cron expression"),),
        triggers=(
            TriggerDescriptor(
                "schedule",
                TriggerMode.SCHEDULE,
                "Run on a cron schedule",
                next_fire=next_fire,
            ),
        ),
    )
