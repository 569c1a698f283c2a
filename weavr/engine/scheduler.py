from __future__ import annotations

import asyncio
import dataclasses
import inspect
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple

from weavr.engine.executor import WorkflowExecutor
from weavr.engine.models import (
    Run,
    RunStatus,
    ScheduledWorkflow,
    ScheduleStatus,
    TriggerDescriptor,
    TriggerMode,
    Workflow,
    utcnow,
)
from weavr.engine.parser import parse_workflow
from weavr.engine.registry import Kind, Registry
from weavr.logging import get_logger
from weavr.service.errors import SchedulerBindingError, WeavrError

logger = get_logger(__name__)

ExecuteWorkflow = Callable[[Workflow, Any, str], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]
Clock = Callable[[], datetime]

SUCCESS = "success"
FAILED = "failed"


@dataclass
class SchedulerEvents:
    """Callbacks wired by the gateway.

    ``on_execute_workflow(workflow, payload, run_id)`` replaces the built-in
    executor when set; its return value may be the finished :class:`Run`.
    """

    on_workflow_triggered: Optional[Callable[[str, str], Any]] = None
    on_workflow_completed: Optional[Callable[[str, str, str], Any]] = None
    on_execute_workflow: Optional[ExecuteWorkflow] = None


@dataclass
class _Entry:
    record: ScheduledWorkflow
    workflow: Workflow
    descriptor: TriggerDescriptor
    webhook_key: Optional[Tuple[str, str]] = None
    timer: Optional[asyncio.Task] = None
    handle: Any = None
    last_fire_at: Optional[datetime] = None


def _normalize_path(path: str) -> str:
    return path.strip().strip("/")


def webhook_binding(name: str, config: Mapping[str, Any]) -> Tuple[str, str]:
    """Return the ``(source, path)`` key a webhook trigger binds.

    ``source`` defaults to the first segment of ``path``; ``path`` defaults to
    the workflow name.
    """
    path = _normalize_path(str(config.get("path") or name))
    source = config.get("source")
    if source:
        source = _normalize_path(str(source))
    else:
        source = path.split("/", 1)[0]
    if not source or not path:
        raise SchedulerBindingError(
            f"webhook trigger for '{name}' needs a non-empty path or source",
            detail={"workflow": name},
        )
    return source, path


def matches_filters(config: Mapping[str, Any], data: Any) -> bool:
    """Apply push-trigger payload filters (channel, chatId, pattern, ignoreBot, user)."""
    if not isinstance(data, Mapping):
        return not any(
            key in config for key in ("channel", "channelId", "chatId", "pattern", "ignoreBot", "user")
        )

    if config.get("channel") is not None:
        wanted = config["channel"]
        actual = data.get("channel", data.get("channelId"))
        if actual != wanted:
            if isinstance(wanted, str) and wanted.startswith("#"):
                bare = wanted[1:]
                if actual != bare and data.get("channelName") != bare:
                    return False
            else:
                return False

    if config.get("channelId") is not None and data.get("channelId") != config["channelId"]:
        return False

    if config.get("chatId") is not None:
        chat = data.get("chat")
        actual = chat.get("id") if isinstance(chat, Mapping) and "id" in chat else data.get("chatId")
        if str(actual) != str(config["chatId"]):
            return False

    pattern = config.get("pattern")
    if isinstance(pattern, str):
        text = data.get("text")
        if not isinstance(text, str):
            return False
        try:
            if not re.search(pattern, text):
                return False
        except re.error:
            logger.warning("trigger_pattern_invalid", pattern=pattern)
            return False

    if config.get("ignoreBot") is True and (data.get("isBot") is True or data.get("botId") is not None):
        return False

    if config.get("user") is not None:
        actual = data.get("user", data.get("userId", data.get("from")))
        if actual != config["user"]:
            return False

    return True


class TriggerScheduler:
    """Owns every workflow's trigger binding and turns trigger events into runs.

    Each scheduled workflow has exactly one record and at most one armed timer
    or listener. Records are only changed through the methods below. Failures
    of fired runs are logged and recorded in ``last_status``; they never stop a
    timer.
    """

    def __init__(
        self,
        registry: Registry,
        *,
        executor: Optional[WorkflowExecutor] = None,
        events: Optional[SchedulerEvents] = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.events = events or SchedulerEvents()
        self._clock = clock
        self._sleep = sleep
        self._entries: Dict[str, _Entry] = {}
        self._webhooks: Dict[Tuple[str, str], str] = {}
        self._inflight: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def schedule_workflow(self, name: str, source: str) -> Optional[ScheduledWorkflow]:
        """Parse ``source`` and arm its trigger under ``name``.

        Returns ``None`` for manual-only workflows (no trigger). Raises
        ``ParseError`` for invalid source, ``NotFoundError`` for an unknown
        trigger type and ``SchedulerBindingError`` when the binding conflicts
        with another workflow or cannot be armed.
        """
        workflow = parse_workflow(source)
        if workflow.trigger is None:
            await self.unschedule_workflow(name)
            logger.info("workflow_manual_only", workflow=name)
            return None

        descriptor = self.registry.lookup(Kind.TRIGGER, workflow.trigger.type)
        config = dict(workflow.trigger.config)

        webhook_key = None
        if descriptor.mode == TriggerMode.WEBHOOK:
            webhook_key = webhook_binding(name, config)
            owner = self._webhooks.get(webhook_key)
            if owner is not None and owner != name:
                raise SchedulerBindingError(
                    f"webhook {webhook_key[0]}/{webhook_key[1]} is already bound to '{owner}'",
                    detail={"source": webhook_key[0], "path": webhook_key[1], "workflow": owner},
                )

        next_run = None
        if descriptor.mode == TriggerMode.SCHEDULE:
            next_run = self._next_fire(descriptor, config, name)

        record = ScheduledWorkflow(
            name=name,
            trigger_type=workflow.trigger.type,
            trigger_config=config,
            mode=descriptor.mode,
            next_run=next_run,
        )
        entry = _Entry(record=record, workflow=workflow, descriptor=descriptor, webhook_key=webhook_key)

        # A failed start must leave any existing schedule for ``name`` armed
        if descriptor.mode == TriggerMode.PUSH:
            if descriptor.start is None:
                raise SchedulerBindingError(
                    f"trigger '{workflow.trigger.type}' cannot be started",
                    detail={"trigger": workflow.trigger.type},
                )
            try:
                entry.handle = await descriptor.start(config, self._push_emitter(name, entry))
            except WeavrError:
                raise
            except Exception as exc:
                raise SchedulerBindingError(
                    f"failed to start trigger '{workflow.trigger.type}' for '{name}': {exc}",
                    detail={"workflow": name, "trigger": workflow.trigger.type},
                ) from exc

        await self.unschedule_workflow(name)

        if descriptor.mode == TriggerMode.SCHEDULE:
            entry.timer = asyncio.create_task(self._cron_loop(name, entry), name=f"cron:{name}")
        elif descriptor.mode == TriggerMode.WEBHOOK:
            self._webhooks[webhook_key] = name

        self._entries[name] = entry
        logger.info(
            "workflow_scheduled",
            workflow=name,
            trigger=record.trigger_type,
            mode=record.mode.value,
            next_run=record.next_run.isoformat() if record.next_run else None,
        )
        return dataclasses.replace(record)

    async def unschedule_workflow(self, name: str) -> bool:
        entry = self._entries.pop(name, None)
        if entry is None:
            return False
        await self._disarm(entry)
        logger.info("workflow_unscheduled", workflow=name)
        return True

    async def _disarm(self, entry: _Entry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            try:
                await entry.timer
            except asyncio.CancelledError:
                pass
            entry.timer = None
        if entry.webhook_key is not None and self._webhooks.get(entry.webhook_key) == entry.record.name:
            del self._webhooks[entry.webhook_key]
        if entry.handle is not None and entry.descriptor.stop is not None:
            try:
                await entry.descriptor.stop(entry.handle)
            except Exception as exc:
                logger.warning("trigger_stop_failed", workflow=entry.record.name, error=str(exc))
            entry.handle = None

    def pause_workflow(self, name: str) -> bool:
        entry = self._entries.get(name)
        if entry is None:
            return False
        entry.record.status = ScheduleStatus.PAUSED
        logger.info("workflow_paused", workflow=name)
        return True

    def resume_workflow(self, name: str) -> bool:
        entry = self._entries.get(name)
        if entry is None:
            return False
        entry.record.status = ScheduleStatus.ACTIVE
        if entry.record.mode == TriggerMode.SCHEDULE:
            entry.record.next_run = self._next_fire(
                entry.descriptor, entry.record.trigger_config, name, self._search_from(entry, self._clock())
            )
        logger.info("workflow_resumed", workflow=name)
        return True

    async def stop_all(self) -> None:
        """Tear down every timer, webhook binding and listener, and cancel in-flight runs."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            await self._disarm(entry)
        self._webhooks.clear()
        inflight = list(self._inflight)
        for task in inflight:
            task.cancel()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)
        logger.info("scheduler_stopped", workflows=len(entries), cancelled_runs=len(inflight))

    async def load_and_schedule_all(self, directory: str | Path) -> List[str]:
        """Schedule every triggered workflow found in ``directory``.

        Files that fail to parse or bind are logged and skipped.
        """
        directory = Path(directory)
        if not directory.is_dir():
            logger.warning("workflows_dir_missing", path=str(directory))
            return []
        scheduled: List[str] = []
        files = sorted(p for p in directory.iterdir() if p.suffix in (".yaml", ".yml") and p.is_file())
        for path in files:
            try:
                source = await asyncio.to_thread(path.read_text, encoding="utf-8")
                workflow = parse_workflow(source)
                if workflow.trigger is None:
                    continue
                if await self.schedule_workflow(workflow.name, source) is not None:
                    scheduled.append(workflow.name)
            except (WeavrError, OSError) as exc:
                logger.error("workflow_load_failed", path=str(path), error=str(exc))
        logger.info("workflows_loaded", directory=str(directory), scheduled=len(scheduled))
        return scheduled

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    def _refreshed(self, entry: _Entry) -> ScheduledWorkflow:
        record = entry.record
        if record.mode == TriggerMode.SCHEDULE and record.status == ScheduleStatus.ACTIVE:
            try:
                record.next_run = self._next_fire(
                    entry.descriptor, record.trigger_config, record.name, self._search_from(entry, self._clock())
                )
            except SchedulerBindingError:
                record.next_run = None
        return dataclasses.replace(record)

    def list_schedules(self) -> List[ScheduledWorkflow]:
        return [self._refreshed(entry) for entry in self._entries.values()]

    def get_schedule(self, name: str) -> Optional[ScheduledWorkflow]:
        entry = self._entries.get(name)
        return self._refreshed(entry) if entry else None

    def get_workflow(self, name: str) -> Optional[Workflow]:
        entry = self._entries.get(name)
        return entry.workflow if entry else None

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def trigger_webhook(
        self, source: str, payload: Any, *, path: Optional[str] = None
    ) -> Dict[str, Any]:
        """Fan ``payload`` out to every active workflow bound to ``source``.

        Paused bindings accept the request without starting a run.
        """
        source = _normalize_path(source)
        wanted_path = _normalize_path(path) if path else None
        run_ids: List[str] = []
        workflows: List[str] = []
        for (bound_source, bound_path), name in sorted(self._webhooks.items()):
            if bound_source != source:
                continue
            if wanted_path is not None and bound_path != wanted_path:
                continue
            entry = self._entries.get(name)
            if entry is None:
                continue
            if entry.record.status == ScheduleStatus.PAUSED:
                logger.info("webhook_received_while_paused", workflow=name, source=source)
                continue
            trigger_data = {
                "type": "webhook",
                "source": source,
                "path": bound_path,
                "body": payload.get("body") if isinstance(payload, Mapping) else payload,
                "headers": payload.get("headers", {}) if isinstance(payload, Mapping) else {},
            }
            run_ids.append(self._fire(name, entry, trigger_data))
            workflows.append(name)
        if not run_ids:
            logger.info("webhook_unmatched", source=source, path=wanted_path)
        return {"triggered": bool(run_ids), "run_ids": run_ids, "workflows": workflows}

    def _push_emitter(self, name: str, entry: _Entry) -> Callable[[Any], Awaitable[None]]:
        async def emit(data: Any) -> None:
            if self._entries.get(name) is not entry:
                return
            if entry.record.status == ScheduleStatus.PAUSED:
                logger.debug("trigger_event_dropped_paused", workflow=name)
                return
            if not matches_filters(entry.record.trigger_config, data):
                logger.debug("trigger_event_filtered", workflow=name)
                return
            payload = {"type": entry.record.trigger_type}
            if isinstance(data, Mapping):
                payload.update(data)
            else:
                payload["data"] = data
            self._fire(name, entry, payload)

        return emit

    def _next_fire(
        self,
        descriptor: TriggerDescriptor,
        config: Mapping[str, Any],
        name: str,
        after: Optional[datetime] = None,
    ) -> datetime:
        if descriptor.next_fire is None:
            raise SchedulerBindingError(
                f"trigger '{descriptor.name}' cannot compute fire times", detail={"workflow": name}
            )
        try:
            return descriptor.next_fire(config, after or self._clock())
        except (ValueError, KeyError, TypeError) as exc:
            raise SchedulerBindingError(
                f"invalid schedule for '{name}': {exc}", detail={"workflow": name}
            ) from exc

    @staticmethod
    def _search_from(entry: _Entry, now: datetime) -> datetime:
        # Never search from before a tick that already fired; a sleep can end
        # slightly short of its wall-clock target.
        if entry.last_fire_at is None:
            return now
        return max(now, entry.last_fire_at)

    async def _cron_loop(self, name: str, entry: _Entry) -> None:
        record = entry.record
        while True:
            now = self._clock()
            try:
                fire_at = self._next_fire(
                    entry.descriptor, record.trigger_config, name, self._search_from(entry, now)
                )
            except SchedulerBindingError as exc:
                logger.error("cron_schedule_failed", workflow=name, error=exc.message)
                return
            record.next_run = fire_at
            await self._sleep(max(0.0, (fire_at - now).total_seconds()))
            entry.last_fire_at = fire_at
            if self._entries.get(name) is not entry:
                return
            if record.status == ScheduleStatus.PAUSED:
                logger.info("cron_fire_skipped_paused", workflow=name)
                continue
            config = record.trigger_config
            self._fire(
                name,
                entry,
                {
                    "type": "cron",
                    "expression": config.get("expression") or config.get("cron"),
                    "timestamp": self._clock().isoformat(),
                },
            )

    def _fire(self, name: str, entry: _Entry, trigger_data: Any) -> str:
        run_id = str(uuid.uuid4())
        logger.info("workflow_triggered", workflow=name, run_id=run_id, trigger=entry.record.trigger_type)
        self._call_event(self.events.on_workflow_triggered, name, run_id)
        task = asyncio.create_task(self._run(name, entry, trigger_data, run_id), name=f"run:{run_id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return run_id

    async def _run(self, name: str, entry: _Entry, trigger_data: Any, run_id: str) -> None:
        status = FAILED
        try:
            outcome = await self._execute(entry.workflow, trigger_data, run_id)
            if isinstance(outcome, Run):
                status = SUCCESS if outcome.status == RunStatus.COMPLETED else FAILED
            elif self.executor is not None and self.executor.get_run(run_id) is not None:
                run = self.executor.get_run(run_id)
                status = SUCCESS if run.status == RunStatus.COMPLETED else FAILED
            else:
                status = SUCCESS
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("scheduled_run_failed", workflow=name, run_id=run_id, error=str(exc))
            status = FAILED
        entry.record.last_run = self._clock()
        entry.record.last_status = status
        entry.record.last_run_id = run_id
        logger.info("scheduled_run_finished", workflow=name, run_id=run_id, status=status)
        self._call_event(self.events.on_workflow_completed, name, run_id, status)

    async def _execute(self, workflow: Workflow, trigger_data: Any, run_id: str) -> Any:
        if self.events.on_execute_workflow is not None:
            return await self.events.on_execute_workflow(workflow, trigger_data, run_id)
        if self.executor is None:
            raise WeavrError("scheduler has no executor configured")
        return await self.executor.execute(workflow, trigger_data, run_id)

    def _call_event(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
        except Exception as exc:
            logger.warning("scheduler_event_failed", error=str(exc))

    async def wait_idle(self) -> None:
        """Wait until every run started by a trigger has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
