from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from weavr.config import ConfigProvider
from weavr.engine.memory import AssembledMemory, MemoryAssembler
from weavr.engine.models import (
    ActionContext,
    ActionDescriptor,
    Run,
    RunStatus,
    StepResult,
    StepSpec,
    StepStatus,
    Workflow,
    utcnow,
)
from weavr.engine.registry import Kind, Registry
from weavr.engine.template import render
from weavr.logging import bind_run_id, get_logger, log_run_trace, sanitize_error_message
from weavr.service.errors import ActionExecutionError, WeavrError

logger = get_logger(__name__)

DEFAULT_HISTORY_SIZE = 100

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class ExecutorHooks:
    """Observer callbacks; each may be a plain function or a coroutine function."""

    on_step_start: Optional[Callable[[str, str], Any]] = None
    on_step_complete: Optional[Callable[[str, str, StepResult], Any]] = None
    on_run_complete: Optional[Callable[[Run], Any]] = None
    on_log: Optional[Callable[[str, str, str], Any]] = None


class WorkflowExecutor:
    """Runs parsed workflows as dependency-ordered sets of concurrent steps.

    A step starts as soon as every step it needs has completed. A failed step
    marks its transitive dependents ``skipped``; unrelated branches keep
    running and the run ends ``failed``. Actions are never retried here unless
    the step declares ``retry``.

    There is no way to cancel a single in-flight run; cancelling the task
    that awaits :meth:`execute` (process shutdown) cancels its running steps.
    """

    def __init__(
        self,
        registry: Registry,
        *,
        hooks: Optional[ExecutorHooks] = None,
        config_provider: Optional[ConfigProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        memory: Optional[MemoryAssembler] = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        strict_templates: bool = False,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.hooks = hooks or ExecutorHooks()
        self.config_provider = config_provider
        self.http_client = http_client
        self.memory = memory or MemoryAssembler(http_client=http_client, config_provider=config_provider)
        self.history_size = max(1, history_size)
        self.strict_templates = strict_templates
        self._sleep = sleep
        self._active: Dict[str, Run] = {}
        self._history: "OrderedDict[str, Run]" = OrderedDict()

    # ------------------------------------------------------------------
    # Run history (read model)
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> Optional[Run]:
        return self._active.get(run_id) or self._history.get(run_id)

    def list_runs(self, limit: Optional[int] = None, workflow: Optional[str] = None) -> List[Run]:
        """Active runs first, then finished runs newest first."""
        runs = list(self._active.values()) + list(reversed(self._history.values()))
        if workflow:
            runs = [run for run in runs if run.workflow_name == workflow]
        return runs[:limit] if limit else runs

    def _remember(self, run: Run) -> None:
        self._active.pop(run.id, None)
        self._history[run.id] = run
        while len(self._history) > self.history_size:
            evicted, _ = self._history.popitem(last=False)
            logger.debug("run_history_evicted", evicted_run_id=evicted)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def _notify(self, hook: Optional[Callable[..., Any]], *args: Any) -> None:
        if hook is None:
            return
        try:
            result = hook(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("executor_hook_failed", hook=getattr(hook, "__name__", repr(hook)), error=str(exc))

    def _step_logger(self, run: Run, workflow: Workflow, step: StepSpec) -> Callable[[str], None]:
        def log(message: str) -> None:
            logger.info("step_log", workflow=workflow.name, step_id=step.id, message=message)
            hook = self.hooks.on_log
            if hook is None:
                return
            try:
                result = hook(run.id, step.id, message)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception as exc:
                logger.warning("executor_hook_failed", hook="on_log", error=str(exc))

        return log

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        workflow: Workflow,
        trigger_data: Any = None,
        run_id: Optional[str] = None,
    ) -> Run:
        run_id = run_id or str(uuid.uuid4())
        if self.get_run(run_id) is not None:
            raise WeavrError(
                f"run id '{run_id}' is already in use",
                status_code=409,
                error_code="conflict",
                detail={"run_id": run_id},
            )
        run = Run(
            id=run_id,
            workflow_name=workflow.name,
            trigger_data=trigger_data,
            steps={step.id: StepResult(id=step.id) for step in workflow.steps},
        )
        self._active[run.id] = run

        with bind_run_id(run.id):
            logger.info("run_started", workflow=workflow.name, steps=len(workflow.steps))
            try:
                await self._execute_graph(run, workflow)
            except asyncio.CancelledError:
                run.status = RunStatus.FAILED
                run.error = "run cancelled"
                run.completed_at = utcnow()
                self._remember(run)
                logger.warning("run_cancelled", workflow=workflow.name)
                raise

            failed = [result for result in run.steps.values() if result.status == StepStatus.FAILED]
            if failed:
                run.status = RunStatus.FAILED
                first = failed[0]
                run.error = sanitize_error_message(f"step '{first.id}' failed: {first.error}")
            else:
                run.status = RunStatus.COMPLETED
            run.completed_at = utcnow()
            self._remember(run)

            log_run_trace(run, logger)
            logger.info(
                "run_completed",
                workflow=workflow.name,
                status=run.status.value,
                failed_steps=[result.id for result in failed],
            )
            await self._notify(self.hooks.on_run_complete, run)
        return run

    def _skip_blocked(self, run: Run, workflow: Workflow, pending: List[str]) -> None:
        """Mark pending steps whose dependencies failed or were skipped."""
        changed = True
        while changed:
            changed = False
            for step_id in list(pending):
                step = workflow.step(step_id)
                blocked = [
                    dep
                    for dep in step.needs
                    if run.steps[dep].status in (StepStatus.FAILED, StepStatus.SKIPPED)
                ]
                if blocked:
                    pending.remove(step_id)
                    result = run.steps[step_id]
                    result.status = StepStatus.SKIPPED
                    result.error = f"dependency '{blocked[0]}' did not complete"
                    logger.info("step_skipped", step_id=step_id, blocked_by=blocked)
                    changed = True

    async def _execute_graph(self, run: Run, workflow: Workflow) -> None:
        pending = list(workflow.step_ids)
        running: Dict[asyncio.Task, str] = {}
        memory_cache = AssembledMemory()
        try:
            while True:
                self._skip_blocked(run, workflow, pending)
                eligible = [
                    step_id
                    for step_id in pending
                    if all(
                        run.steps[dep].status == StepStatus.COMPLETED
                        for dep in workflow.step(step_id).needs
                    )
                ]
                for step_id in eligible:
                    pending.remove(step_id)
                    task = asyncio.create_task(
                        self._run_step(run, workflow, workflow.step(step_id), memory_cache),
                        name=f"{run.id}:{step_id}",
                    )
                    running[task] = step_id

                if not running:
                    break

                done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
                    # _run_step records failures itself; surface programming errors
                    task.result()
        finally:
            for task in running:
                task.cancel()

        for step_id in pending:
            # unreachable for parsed (acyclic) workflows
            run.steps[step_id].status = StepStatus.SKIPPED

    def _template_context(
        self, run: Run, workflow: Workflow, memory: Optional[AssembledMemory] = None
    ) -> Dict[str, Any]:
        context: Dict[str, Any] = {
            "trigger": run.trigger_data,
            "steps": run.outputs(),
            "env": dict(workflow.env),
        }
        if memory is not None:
            context["memory"] = {"blocks": memory.blocks, "sources": memory.sources}
        return context

    async def _run_step(
        self,
        run: Run,
        workflow: Workflow,
        step: StepSpec,
        memory_cache: AssembledMemory,
    ) -> None:
        result = run.steps[step.id]
        result.status = StepStatus.RUNNING
        result.started_at = utcnow()
        started = time.monotonic()
        await self._notify(self.hooks.on_step_start, run.id, step.id)
        logger.info("step_started", workflow=workflow.name, step_id=step.id, action=step.action)

        try:
            action = self.registry.lookup(Kind.ACTION, step.action)
            memory = AssembledMemory()
            if workflow.memory:
                memory = await self.memory.assemble(
                    workflow.memory, self._template_context(run, workflow), cache=memory_cache
                )
            context_map = self._template_context(run, workflow, memory)
            config = render(dict(step.config), context_map, strict=self.strict_templates)
            context = ActionContext(
                workflow_name=workflow.name,
                run_id=run.id,
                step_id=step.id,
                config=config,
                trigger=run.trigger_data,
                steps=context_map["steps"],
                env=dict(workflow.env),
                memory=memory.blocks,
                memory_sources=memory.sources,
                log=self._step_logger(run, workflow, step),
                config_provider=self.config_provider,
                http_client=self.http_client,
            )
            result.output = await self._invoke(action, context, step, result)
            result.status = StepStatus.COMPLETED
        except Exception as exc:
            result.status = StepStatus.FAILED
            result.error = sanitize_error_message(str(exc) or type(exc).__name__)
            logger.warning(
                "step_failed",
                workflow=workflow.name,
                step_id=step.id,
                action=step.action,
                error_type=type(exc).__name__,
                error=result.error,
            )
        finally:
            result.completed_at = utcnow()
            result.duration_ms = round((time.monotonic() - started) * 1000, 3)

        if result.status == StepStatus.COMPLETED:
            logger.info("step_completed", step_id=step.id, duration_ms=result.duration_ms)
        await self._notify(self.hooks.on_step_complete, run.id, step.id, result)

    async def _invoke(
        self,
        action: ActionDescriptor,
        context: ActionContext,
        step: StepSpec,
        result: StepResult,
    ) -> Any:
        attempts = step.retry.attempts if step.retry else 1
        delay_ms = step.retry.delay_ms if step.retry else 0
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            result.attempts = attempt + 1
            try:
                if step.timeout is not None:
                    return await asyncio.wait_for(action.execute(context), timeout=step.timeout)
                return await action.execute(context)
            except asyncio.TimeoutError as exc:
                if step.timeout is None:
                    last_error = exc
                else:
                    last_error = ActionExecutionError(
                        f"step '{step.id}' timed out after {step.timeout}s",
                        detail={"step": step.id, "timeout": step.timeout},
                    )
            except Exception as exc:
                last_error = exc
            if attempt < attempts - 1:
                wait_s = delay_ms / 1000.0 * (attempt + 1)
                logger.warning(
                    "step_retry",
                    step_id=step.id,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay_s=wait_s,
                    error=str(last_error),
                )
                await self._sleep(wait_s)
        raise last_error
