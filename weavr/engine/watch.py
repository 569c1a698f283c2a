"""Polling file watcher backing the ``filesystem.watch`` trigger."""
from __future__ import annotations

import asyncio
import os
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from weavr.engine.models import utcnow
from weavr.logging import get_logger

logger = get_logger(__name__)

WATCH_EVENTS = ("add", "change", "unlink")
DEFAULT_POLL_INTERVAL_SECONDS = 1.0

Snapshot = Dict[str, Tuple[int, int]]
Emit = Callable[[Dict[str, Any]], Awaitable[None]]


def take_snapshot(root: Path, recursive: bool = True) -> Snapshot:
    """Map every file under ``root`` to ``(mtime_ns, size)``."""
    entries: Snapshot = {}
    if root.is_file():
        stat = root.stat()
        return {str(root): (stat.st_mtime_ns, stat.st_size)}
    if not root.is_dir():
        return entries
    if recursive:
        walker: Iterable[Tuple[str, List[str], List[str]]] = os.walk(root)
    else:
        walker = [(str(root), [], [name for name in os.listdir(root) if (root / name).is_file()])]
    for dirpath, _dirs, files in walker:
        for name in files:
            full = os.path.join(dirpath, name)
            try:
                stat = os.stat(full)
            except FileNotFoundError:
                continue
            entries[full] = (stat.st_mtime_ns, stat.st_size)
    return entries


def diff_snapshots(before: Snapshot, after: Snapshot) -> List[Tuple[str, str]]:
    changes: List[Tuple[str, str]] = []
    for path, signature in after.items():
        if path not in before:
            changes.append(("add", path))
        elif before[path] != signature:
            changes.append(("change", path))
    for path in before:
        if path not in after:
            changes.append(("unlink", path))
    return sorted(changes, key=lambda item: item[1])


class PollingWatcher:
    """Watches a file or directory by comparing periodic stat snapshots."""

    def __init__(
        self,
        path: str | Path,
        emit: Emit,
        *,
        events: Iterable[str] = ("add", "change"),
        pattern: Optional[str] = None,
        ignore_initial: bool = True,
        recursive: bool = True,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.path = Path(path).expanduser()
        self.events = frozenset(events)
        unknown = self.events.difference(WATCH_EVENTS)
        if unknown:
            raise ValueError(f"unknown watch events: {sorted(unknown)}")
        self.pattern = re.compile(pattern) if pattern else None
        self.ignore_initial = ignore_initial
        self.recursive = recursive
        self.interval = interval
        self._emit = emit
        self._sleep = sleep
        self._snapshot: Snapshot = {}
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        self._snapshot = await asyncio.to_thread(take_snapshot, self.path, self.recursive)
        if not self.ignore_initial:
            for path in sorted(self._snapshot):
                await self._dispatch("add", path)
        self._task = asyncio.create_task(self._loop(), name=f"watch:{self.path}")
        logger.info("file_watch_started", path=str(self.path), files=len(self._snapshot))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("file_watch_stopped", path=str(self.path))

    async def poll_once(self) -> List[Tuple[str, str]]:
        current = await asyncio.to_thread(take_snapshot, self.path, self.recursive)
        changes = diff_snapshots(self._snapshot, current)
        self._snapshot = current
        for event, path in changes:
            await self._dispatch(event, path)
        return changes

    async def _dispatch(self, event: str, path: str) -> None:
        if event not in self.events:
            return
        filename = os.path.basename(path)
        if self.pattern and not self.pattern.search(filename):
            return
        logger.debug("file_watch_event", watch_event=event, path=path)
        await self._emit(
            {
                "type": f"filesystem.{event}",
                "event": event,
                "path": path,
                "filename": filename,
                "timestamp": utcnow().isoformat(),
            }
        )

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.interval)
            try:
                await self.poll_once()
            except OSError as exc:
                logger.warning("file_watch_poll_failed", path=str(self.path), error=str(exc))
