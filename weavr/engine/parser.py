from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from weavr.engine.models import (
    MemoryBlockSpec,
    MemorySourceSpec,
    RetrySpec,
    StepSpec,
    TriggerSpec,
    Workflow,
)
from weavr.logging import get_logger
from weavr.service.errors import CyclicDependency, ParseError, UnknownDependency

logger = get_logger(__name__)

MEMORY_SOURCE_TYPES = {"text", "file", "url", "web_search", "step", "trigger"}

_WHITE, _GRAY, _BLACK = 0, 1, 2


def _config_of(raw: Mapping[str, Any], where: str) -> Dict[str, Any]:
    """Return the ``with`` (or ``config``) mapping of a step or trigger."""
    value = raw.get("with", raw.get("config"))
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ParseError(f"{where}: 'with' must be a mapping", detail={"where": where})
    return dict(value)


def _needs_of(raw: Mapping[str, Any], step_id: str) -> Tuple[str, ...]:
    value = raw.get("needs", raw.get("depends_on"))
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, Sequence) or not all(isinstance(item, str) for item in value):
        raise ParseError(
            f"step '{step_id}': 'needs' must be a list of step ids", detail={"step": step_id}
        )
    # preserve order, drop repeats
    return tuple(dict.fromkeys(value))


def _optional_int(raw: Mapping[str, Any], key: str, where: str, *, minimum: int = 0) -> Optional[int]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ParseError(f"{where}: '{key}' must be an integer >= {minimum}", detail={"where": where})
    return value


def _parse_retry(raw: Any, step_id: str) -> Optional[RetrySpec]:
    if raw is None:
        return None
    where = f"step '{step_id}'"
    if isinstance(raw, int) and not isinstance(raw, bool):
        raw = {"attempts": raw}
    if not isinstance(raw, Mapping):
        raise ParseError(f"{where}: 'retry' must be a mapping", detail={"step": step_id})
    attempts = _optional_int(raw, "attempts", where + " retry", minimum=1)
    delay = _optional_int(raw, "delay", where + " retry", minimum=0)
    return RetrySpec(
        attempts=attempts if attempts is not None else 3,
        delay_ms=delay if delay is not None else 1000,
    )


def _parse_timeout(raw: Any, step_id: str) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        raise ParseError(
            f"step '{step_id}': 'timeout' must be a positive number of seconds",
            detail={"step": step_id},
        )
    return float(raw)


def _parse_step(raw: Any, index: int) -> StepSpec:
    if not isinstance(raw, Mapping):
        raise ParseError(f"step #{index + 1} must be a mapping", detail={"index": index})
    step_id = raw.get("id")
    if not isinstance(step_id, str) or not step_id.strip():
        raise ParseError(f"step #{index + 1} is missing an 'id'", detail={"index": index})
    action = raw.get("action")
    if not isinstance(action, str) or not action.strip():
        raise ParseError(f"step '{step_id}' is missing an 'action'", detail={"step": step_id})
    return StepSpec(
        id=step_id,
        action=action.strip(),
        needs=_needs_of(raw, step_id),
        config=_config_of(raw, f"step '{step_id}'"),
        timeout=_parse_timeout(raw.get("timeout"), step_id),
        retry=_parse_retry(raw.get("retry"), step_id),
    )


def _parse_trigger(raw: Mapping[str, Any]) -> Optional[TriggerSpec]:
    trigger = raw.get("trigger")
    if trigger is None and raw.get("triggers") is not None:
        triggers = raw["triggers"]
        if not isinstance(triggers, list):
            raise ParseError("'triggers' must be a list")
        if len(triggers) > 1:
            raise ParseError("a workflow may declare at most one trigger")
        trigger = triggers[0] if triggers else None
    if trigger is None:
        return None
    if not isinstance(trigger, Mapping):
        raise ParseError("'trigger' must be a mapping")
    trigger_type = trigger.get("type")
    if not isinstance(trigger_type, str) or not trigger_type.strip():
        raise ParseError("trigger 'type' must be a non-empty string")
    return TriggerSpec(type=trigger_type.strip(), config=_config_of(trigger, "trigger"))


def _parse_source(raw: Any, block_id: str, index: int) -> MemorySourceSpec:
    where = f"memory block '{block_id}' source #{index + 1}"
    if not isinstance(raw, Mapping):
        raise ParseError(f"{where} must be a mapping")
    source_type = raw.get("type")
    if source_type not in MEMORY_SOURCE_TYPES:
        raise ParseError(
            f"{where}: unknown source type '{source_type}'",
            detail={"allowed": sorted(MEMORY_SOURCE_TYPES)},
        )
    required = {"text": "text", "file": "path", "url": "url", "web_search": "query", "step": "step"}
    field_name = required.get(source_type)
    if field_name and not raw.get(field_name):
        raise ParseError(f"{where}: '{source_type}' source requires '{field_name}'")
    return MemorySourceSpec(
        type=source_type,
        id=raw.get("id"),
        label=raw.get("label"),
        text=raw.get("text"),
        path=raw.get("path"),
        url=raw.get("url"),
        query=raw.get("query"),
        step=raw.get("step"),
        max_results=_optional_int(raw, "maxResults", where, minimum=1)
        if "maxResults" in raw
        else _optional_int(raw, "max_results", where, minimum=1),
        max_chars=_optional_int(raw, "maxChars", where, minimum=1)
        if "maxChars" in raw
        else _optional_int(raw, "max_chars", where, minimum=1),
    )


def _parse_memory(raw: Any) -> Tuple[MemoryBlockSpec, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ParseError("'memory' must be a list of blocks")
    blocks: List[MemoryBlockSpec] = []
    seen: set[str] = set()
    for index, block in enumerate(raw):
        if not isinstance(block, Mapping) or not isinstance(block.get("id"), str):
            raise ParseError(f"memory block #{index + 1} needs an 'id'")
        block_id = block["id"]
        if block_id in seen:
            raise ParseError(f"duplicate memory block id '{block_id}'", detail={"block": block_id})
        seen.add(block_id)
        sources = block.get("sources") or []
        if not isinstance(sources, list):
            raise ParseError(f"memory block '{block_id}': 'sources' must be a list")
        where = f"memory block '{block_id}'"
        max_chars = (
            _optional_int(block, "maxChars", where, minimum=1)
            if "maxChars" in block
            else _optional_int(block, "max_chars", where, minimum=1)
        )
        separator = block.get("separator")
        blocks.append(
            MemoryBlockSpec(
                id=block_id,
                description=block.get("description"),
                sources=tuple(_parse_source(src, block_id, i) for i, src in enumerate(sources)),
                template=block.get("template"),
                separator=separator if isinstance(separator, str) else "\n---\n",
                max_chars=max_chars,
                dedupe=bool(block.get("dedupe", False)),
            )
        )
    return tuple(blocks)


def find_cycle(steps: Sequence[StepSpec]) -> Optional[List[str]]:
    """Return the ids forming a cycle in the ``needs`` graph, or ``None``.

    Depth-first search with white/gray/black coloring; meeting a gray node
    means the current path loops back on itself.
    """
    graph = {step.id: step.needs for step in steps}
    color = {step_id: _WHITE for step_id in graph}
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = _GRAY
        path.append(node)
        for dep in graph.get(node, ()):
            if color.get(dep) == _GRAY:
                start = path.index(dep)
                return path[start:] + [dep]
            if color.get(dep) == _WHITE:
                found = visit(dep)
                if found:
                    return found
        path.pop()
        color[node] = _BLACK
        return None

    for step_id in graph:
        if color[step_id] == _WHITE:
            cycle = visit(step_id)
            if cycle:
                return cycle
    return None


def build_workflow(raw: Any) -> Workflow:
    """Validate an already-loaded document and build a :class:`Workflow`."""
    if not isinstance(raw, Mapping):
        raise ParseError("workflow must be a mapping")

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ParseError("workflow 'name' is required")

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ParseError(f"workflow '{name}' must declare at least one step", detail={"workflow": name})

    steps = tuple(_parse_step(step, index) for index, step in enumerate(raw_steps))
    seen: set[str] = set()
    for step in steps:
        if step.id in seen:
            raise ParseError(f"duplicate step id '{step.id}'", detail={"step": step.id})
        seen.add(step.id)

    for step in steps:
        for dep in step.needs:
            if dep not in seen:
                raise UnknownDependency(step.id, dep)

    cycle = find_cycle(steps)
    if cycle:
        raise CyclicDependency(cycle)

    trigger = _parse_trigger(raw)

    env = raw.get("env") or {}
    if not isinstance(env, Mapping):
        raise ParseError("'env' must be a mapping")

    description = raw.get("description")
    return Workflow(
        name=name.strip(),
        description=str(description) if description is not None else None,
        trigger=trigger,
        steps=steps,
        memory=_parse_memory(raw.get("memory")),
        env={str(key): str(value) for key, value in env.items()},
    )


def parse_workflow(source: str) -> Workflow:
    """Parse workflow YAML text into a validated :class:`Workflow`."""
    try:
        raw = yaml.safe_load(source)
    except yaml.YAMLError as exc:
        raise ParseError(f"invalid workflow YAML: {exc}") from exc
    workflow = build_workflow(raw)
    logger.debug(
        "workflow_parsed",
        workflow=workflow.name,
        steps=len(workflow.steps),
        trigger=workflow.trigger.type if workflow.trigger else None,
    )
    return workflow


def parse_workflow_file(path: str | Path) -> Workflow:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ParseError(f"cannot read workflow file {path}: {exc}", detail={"path": str(path)}) from exc
    return parse_workflow(text)


def validate_workflow(source: str) -> List[str]:
    """Return validation errors for ``source``; an empty list means valid."""
    try:
        parse_workflow(source)
    except ParseError as exc:
        return [exc.message]
    return []


def _source_to_dict(source: MemorySourceSpec) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": source.id,
        "label": source.label,
        "type": source.type,
        "text": source.text,
        "path": source.path,
        "url": source.url,
        "query": source.query,
        "step": source.step,
        "maxResults": source.max_results,
        "maxChars": source.max_chars,
    }
    return {key: value for key, value in data.items() if value is not None}


def workflow_to_dict(workflow: Workflow) -> Dict[str, Any]:
    data: Dict[str, Any] = {"name": workflow.name}
    if workflow.description:
        data["description"] = workflow.description
    if workflow.env:
        data["env"] = dict(workflow.env)
    if workflow.trigger:
        data["trigger"] = {"type": workflow.trigger.type}
        if workflow.trigger.config:
            data["trigger"]["with"] = dict(workflow.trigger.config)
    if workflow.memory:
        data["memory"] = []
        for block in workflow.memory:
            entry: Dict[str, Any] = {"id": block.id}
            if block.description:
                entry["description"] = block.description
            entry["sources"] = [_source_to_dict(source) for source in block.sources]
            if block.template:
                entry["template"] = block.template
            if block.separator != "\n---\n":
                entry["separator"] = block.separator
            if block.max_chars:
                entry["maxChars"] = block.max_chars
            if block.dedupe:
                entry["dedupe"] = True
            data["memory"].append(entry)
    steps = []
    for step in workflow.steps:
        entry = {"id": step.id, "action": step.action}
        if step.needs:
            entry["needs"] = list(step.needs)
        if step.config:
            entry["with"] = dict(step.config)
        if step.timeout is not None:
            entry["timeout"] = step.timeout
        if step.retry is not None:
            entry["retry"] = {"attempts": step.retry.attempts, "delay": step.retry.delay_ms}
        steps.append(entry)
    data["steps"] = steps
    return data


def stringify(workflow: Workflow) -> str:
    """Dump a workflow back to YAML in the ``with``/``needs`` form."""
    return yaml.safe_dump(workflow_to_dict(workflow), sort_keys=False, allow_unicode=True)
