from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Tuple,
)

if TYPE_CHECKING:
    import httpx

    from weavr.config import ConfigProvider


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"

    def __str__(self) -> str:
        return self.value


class TriggerMode(str, Enum):
    """How the scheduler arms a trigger.

    - schedule: pull-style; the descriptor computes the next fire time
    - webhook: bound to an inbound ``(source, path)`` key
    - push: the descriptor starts a listener that calls back with payloads
    - manual: runs only on explicit invocation
    """

    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    PUSH = "push"
    MANUAL = "manual"


# =========================================================================
# Workflow definition
# =========================================================================


@dataclass(frozen=True)
class RetrySpec:
    """Opt-in per-step retry; ``delay_ms`` grows linearly per attempt."""

    attempts: int = 1
    delay_ms: int = 1000


@dataclass(frozen=True)
class StepSpec:
    id: str
    action: str
    needs: Tuple[str, ...] = ()
    config: Mapping[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None
    retry: Optional[RetrySpec] = None


@dataclass(frozen=True)
class TriggerSpec:
    type: str
    config: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MemorySourceSpec:
    type: str
    id: Optional[str] = None
    label: Optional[str] = None
    text: Optional[str] = None
    path: Optional[str] = None
    url: Optional[str] = None
    query: Optional[str] = None
    step: Optional[str] = None
    max_results: Optional[int] = None
    max_chars: Optional[int] = None

    def key(self, index: int) -> str:
        return self.id or self.label or f"source{index + 1}"

    @property
    def depends_on_run(self) -> bool:
        return self.type == "step"


@dataclass(frozen=True)
class MemoryBlockSpec:
    id: str
    sources: Tuple[MemorySourceSpec, ...] = ()
    description: Optional[str] = None
    template: Optional[str] = None
    separator: str = "\n---\n"
    max_chars: Optional[int] = None
    dedupe: bool = False

    @property
    def depends_on_run(self) -> bool:
        return any(source.depends_on_run for source in self.sources)


@dataclass(frozen=True)
class Workflow:
    """Parsed, validated workflow. Immutable; shared by concurrent runs."""

    name: str
    steps: Tuple[StepSpec, ...]
    description: Optional[str] = None
    trigger: Optional[TriggerSpec] = None
    memory: Tuple[MemoryBlockSpec, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def step_ids(self) -> Tuple[str, ...]:
        return tuple(step.id for step in self.steps)

    def step(self, step_id: str) -> StepSpec:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def dependents(self) -> Dict[str, Tuple[str, ...]]:
        """Map each step id to the ids of steps that directly need it."""
        reverse: Dict[str, list] = {step.id: [] for step in self.steps}
        for step in self.steps:
            for dep in step.needs:
                reverse[dep].append(step.id)
        return {key: tuple(value) for key, value in reverse.items()}


# =========================================================================
# Execution state
# =========================================================================


@dataclass
class StepResult:
    id: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    output: Any = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "output": self.output,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class Run:
    id: str
    workflow_name: str
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    trigger_data: Any = None
    steps: Dict[str, StepResult] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING

    def outputs(self) -> Dict[str, Any]:
        """Outputs of completed steps keyed by step id."""
        return {
            step_id: result.output
            for step_id, result in self.steps.items()
            if result.status == StepStatus.COMPLETED
        }

    def snapshot(self) -> "Run":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_name": self.workflow_name,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
            "trigger_data": self.trigger_data,
            "steps": {step_id: result.to_dict() for step_id, result in self.steps.items()},
        }


@dataclass
class ScheduledWorkflow:
    name: str
    trigger_type: str
    trigger_config: Mapping[str, Any]
    mode: TriggerMode
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[str] = None
    last_run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "trigger_type": self.trigger_type,
            "trigger_config": dict(self.trigger_config),
            "mode": self.mode.value,
            "status": self.status.value,
            "next_run": _iso(self.next_run),
            "last_run": _iso(self.last_run),
            "last_status": self.last_status,
            "last_run_id": self.last_run_id,
        }


# =========================================================================
# Plugin descriptors
# =========================================================================


@dataclass
class ActionContext:
    """Everything an action sees while executing one step."""

    workflow_name: str
    run_id: str
    step_id: str
    config: Dict[str, Any]
    trigger: Any = None
    steps: Dict[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    memory: Dict[str, str] = field(default_factory=dict)
    memory_sources: Dict[str, Dict[str, str]] = field(default_factory=dict)
    log: Callable[[str], None] = lambda message: None
    config_provider: Optional["ConfigProvider"] = None
    http_client: Optional["httpx.AsyncClient"] = None

    def template_context(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger,
            "steps": self.steps,
            "env": dict(self.env),
            "memory": {"blocks": self.memory, "sources": self.memory_sources},
        }


ActionHandler = Callable[[ActionContext], Awaitable[Any]]
Emit = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class ActionDescriptor:
    name: str
    execute: ActionHandler
    description: str = ""


@dataclass(frozen=True)
class TriggerDescriptor:
    """Registry entry for a trigger type.

    ``start(config, emit)`` returns an opaque handle later passed to
    ``stop(handle)``; only push triggers set them. Schedule triggers provide
    ``next_fire(config, after)`` instead.
    """

    name: str
    mode: TriggerMode
    description: str = ""
    start: Optional[Callable[[Mapping[str, Any], Emit], Awaitable[Any]]] = None
    stop: Optional[Callable[[Any], Awaitable[None]]] = None
    next_fire: Optional[Callable[[Mapping[str, Any], datetime], datetime]] = None
