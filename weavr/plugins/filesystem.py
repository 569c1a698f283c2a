from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from weavr.engine.models import ActionContext, ActionDescriptor, Emit, TriggerDescriptor, TriggerMode
from weavr.engine.registry import Plugin
from weavr.engine.watch import DEFAULT_POLL_INTERVAL_SECONDS, PollingWatcher
from weavr.service.errors import ActionExecutionError


def _path(ctx: ActionContext) -> Path:
    raw = ctx.config.get("path")
    if not raw:
        raise ActionExecutionError("filesystem action requires a 'path'")
    return Path(str(raw)).expanduser()


def _parse(path: Path, content: str, mode: str) -> Any:
    if mode == "auto":
        mode = {".json": "json", ".yaml": "yaml", ".yml": "yaml"}.get(path.suffix.lower(), "text")
    if mode == "json":
        return json.loads(content)
    if mode == "yaml":
        return yaml.safe_load(content)
    return content


async def read(ctx: ActionContext) -> Dict[str, Any]:
    path = _path(ctx)
    ctx.log(f"reading {path}")
    try:
        content = await asyncio.to_thread(path.read_text, encoding=ctx.config.get("encoding", "utf-8"))
    except OSError as exc:
        raise ActionExecutionError(f"cannot read {path}: {exc.strerror or exc}") from exc
    try:
        parsed = _parse(path, content, str(ctx.config.get("parse", "auto")))
    except (ValueError, yaml.YAMLError) as exc:
        raise ActionExecutionError(f"cannot parse {path}: {exc}") from exc
    return {"path": str(path), "content": parsed, "size": len(content)}


async def write(ctx: ActionContext) -> Dict[str, Any]:
    path = _path(ctx)
    content = ctx.config.get("content", "")
    if not isinstance(content, str):
        content = json.dumps(content, indent=2)
    append = ctx.config.get("mode") == "append"

    def _write() -> int:
        if ctx.config.get("createDirs", True):
            path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a" if append else "w", encoding="utf-8") as handle:
            handle.write(content)
        return path.stat().st_size

    ctx.log(f"writing {len(content)} chars to {path}")
    try:
        size = await asyncio.to_thread(_write)
    except OSError as exc:
        raise ActionExecutionError(f"cannot write {path}: {exc.strerror or exc}") from exc
    return {"path": str(path), "size": size, "mode": "append" if append else "write"}


async def exists(ctx: ActionContext) -> Dict[str, Any]:
    path = _path(ctx)
    found = path.exists()
    return {
        "path": str(path),
        "exists": found,
        "isFile": found and path.is_file(),
        "isDirectory": found and path.is_dir(),
    }


async def start_watch(config: Mapping[str, Any], emit: Emit) -> PollingWatcher:
    path = config.get("path")
    if not path:
        raise ValueError("filesystem.watch requires a 'path'")
    events = config.get("events") or ("add", "change")
    if isinstance(events, str):
        events = (events,)
    watcher = PollingWatcher(
        str(path),
        emit,
        events=events,
        pattern=config.get("pattern"),
        ignore_initial=bool(config.get("ignoreInitial", True)),
        recursive=bool(config.get("recursive", True)),
        interval=float(config.get("interval", DEFAULT_POLL_INTERVAL_SECONDS)),
    )
    await watcher.start()
    return watcher


async def stop_watch(watcher: PollingWatcher) -> None:
    await watcher.stop()


def plugin() -> Plugin:
    return Plugin(
        name="filesystem",
        version="1.0.0",
        description="File reads, writes and change watching",
        actions=(
            ActionDescriptor("read", read, "Read a file, parsing JSON or YAML by extension"),
            ActionDescriptor("write", write, "Write or append to a file"),
            ActionDescriptor("exists", exists, "Check whether a path exists"),
        ),
        triggers=(
            TriggerDescriptor(
                "watch",
                TriggerMode.PUSH,
                "Run when files under a path are added, changed or removed",
                start=start_watch,
                stop=stop_watch,
            ),
        ),
    )
