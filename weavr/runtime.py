from __future__ import annotations

import asyncio
import threading
import uuid
from typing import Any, Dict, Optional, Set

from weavr.agent.tool_server import ToolServerManager
from weavr.config import ConfigProvider, FileConfigProvider, Settings, get_settings, reset_settings_cache
from weavr.engine.executor import WorkflowExecutor
from weavr.engine.memory import MemoryAssembler
from weavr.engine.models import Run, Workflow, utcnow
from weavr.engine.parser import parse_workflow
from weavr.engine.registry import Registry, build_registry
from weavr.engine.scheduler import TriggerScheduler
from weavr.logging import get_logger
from weavr.plugins.builtin import builtin_plugins
from weavr.service.errors import NotFoundError, WeavrError
from weavr.service.http_retry import RetryPolicy, build_http_client

logger = get_logger(__name__)


class Runtime:
    """Holds the process-wide engine objects shared by the gateway."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        config_provider: Optional[ConfigProvider] = None,
        registry: Optional[Registry] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.started_at = utcnow()
        self.policy = RetryPolicy(
            max_retries=self.settings.http_max_retries,
            timeout=self.settings.http_timeout_seconds,
        )
        self.config_provider = config_provider or FileConfigProvider(
            self.settings.resolved_config_file, ttl_seconds=self.settings.config_ttl_seconds
        )
        self.http_client = build_http_client(timeout=self.settings.http_timeout_seconds)
        self.tool_servers = ToolServerManager()
        self.registry = registry or build_registry(
            builtin_plugins(
                tool_servers=self.tool_servers,
                workspace=self.settings.resolved_tool_workspace,
                shell_timeout=self.settings.shell_timeout_seconds,
                agent_max_iterations=self.settings.agent_max_iterations,
                policy=self.policy,
            )
        )
        self.executor = WorkflowExecutor(
            self.registry,
            config_provider=self.config_provider,
            http_client=self.http_client,
            memory=MemoryAssembler(
                http_client=self.http_client,
                config_provider=self.config_provider,
                base_dir=self.settings.resolved_workflows_dir,
            ),
            history_size=self.settings.run_history_size,
            strict_templates=self.settings.strict_templates,
        )
        self.scheduler = TriggerScheduler(self.registry, executor=self.executor)
        self._background: Set[asyncio.Task] = set()
        logger.info(
            "runtime_initialized",
            workflows_dir=str(self.settings.resolved_workflows_dir),
            config_file=str(self.settings.resolved_config_file),
            actions=len(self.registry.list("action")),
            triggers=len(self.registry.list("trigger")),
        )

    async def start(self) -> None:
        await self.tool_servers.load_from_config(self.settings.resolved_config_file)
        await self.scheduler.load_and_schedule_all(self.settings.resolved_workflows_dir)

    async def close(self) -> None:
        await self.scheduler.stop_all()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.tool_servers.close_all()
        await self.http_client.aclose()
        logger.info("runtime_closed")

    def find_workflow(self, name: str) -> Workflow:
        """Scheduled workflows first, then any definition in the workflows directory."""
        workflow = self.scheduler.get_workflow(name)
        if workflow is not None:
            return workflow
        directory = self.settings.resolved_workflows_dir
        if directory.is_dir():
            for path in sorted(directory.iterdir()):
                if path.suffix not in (".yaml", ".yml"):
                    continue
                try:
                    candidate = parse_workflow(path.read_text(encoding="utf-8"))
                except (WeavrError, OSError) as exc:
                    logger.debug("workflow_candidate_skipped", path=str(path), error=str(exc))
                    continue
                if candidate.name == name:
                    return candidate
        raise NotFoundError(f"workflow '{name}' not found", detail={"workflow": name})

    async def run_workflow(self, workflow: Workflow, trigger_data: Any = None, *, wait: bool = False) -> str | Run:
        """Start a manual run; returns the run id, or the finished run when ``wait``."""
        data: Dict[str, Any] = {"type": "manual", "timestamp": utcnow().isoformat()}
        if trigger_data is not None:
            data["data"] = trigger_data
        if wait:
            return await self.executor.execute(workflow, data)
        run_id = str(uuid.uuid4())
        task = asyncio.create_task(self.executor.execute(workflow, data, run_id=run_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return run_id


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(settings: Optional[Settings] = None, **kwargs: Any) -> Runtime:
    """Replace the singleton; used by tests that point the runtime at a temp directory."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime(settings or get_settings(), **kwargs)
        return runtime
