from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import APIRouter, Query, Request

from weavr.api.schemas import (
    ActionInfo,
    Envelope,
    RunWorkflowRequest,
    ScheduleResponse,
    TriggerInfo,
    WebhookAccepted,
    filter_webhook_headers,
)
from weavr.engine.models import Run
from weavr.engine.registry import Kind
from weavr.logging import get_logger
from weavr.runtime import get_runtime
from weavr.service.errors import NotFoundError

logger = get_logger(__name__)

router = APIRouter()

MAX_RUNS_PAGE = 100


async def _read_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace")


@router.post("/webhooks/{source}", response_model=Envelope)
async def receive_webhook(source: str, request: Request, path: Optional[str] = Query(None)) -> Envelope:
    runtime = get_runtime()
    payload = {"body": await _read_body(request), "headers": filter_webhook_headers(dict(request.headers))}
    result = await runtime.scheduler.trigger_webhook(source, payload, path=path)
    logger.info("webhook_received", source=source, triggered=len(result["run_ids"]))
    return Envelope(status="ok", data={"received": True, **WebhookAccepted(**result).model_dump()})


@router.post("/workflows/{name}/run", response_model=Envelope)
async def run_workflow(name: str, body: Optional[RunWorkflowRequest] = None) -> Envelope:
    runtime = get_runtime()
    body = body or RunWorkflowRequest()
    workflow = runtime.find_workflow(name)
    outcome = await runtime.run_workflow(workflow, body.data, wait=body.wait)
    if isinstance(outcome, Run):
        return Envelope(status="ok", data=outcome.to_dict())
    return Envelope(status="ok", data={"run_id": outcome, "workflow": workflow.name})


@router.get("/runs", response_model=Envelope)
async def list_runs(
    limit: int = Query(20, ge=1, le=MAX_RUNS_PAGE),
    workflow: Optional[str] = Query(None),
) -> Envelope:
    runs = get_runtime().executor.list_runs(limit=limit, workflow=workflow)
    return Envelope(status="ok", data={"items": [run.to_dict() for run in runs]})


@router.get("/runs/{run_id}", response_model=Envelope)
async def get_run(run_id: str) -> Envelope:
    run = get_runtime().executor.get_run(run_id)
    if run is None:
        raise NotFoundError(f"run '{run_id}' not found", detail={"run_id": run_id})
    return Envelope(status="ok", data=run.to_dict())


@router.get("/schedules", response_model=Envelope)
async def list_schedules() -> Envelope:
    schedules = get_runtime().scheduler.list_schedules()
    items = [ScheduleResponse(**record.to_dict()).model_dump() for record in schedules]
    return Envelope(status="ok", data={"items": items})


@router.post("/schedules/{name}/pause", response_model=Envelope)
async def pause_schedule(name: str) -> Envelope:
    scheduler = get_runtime().scheduler
    if not scheduler.pause_workflow(name):
        raise NotFoundError(f"workflow '{name}' is not scheduled", detail={"workflow": name})
    return Envelope(status="ok", data=ScheduleResponse(**scheduler.get_schedule(name).to_dict()).model_dump())


@router.post("/schedules/{name}/resume", response_model=Envelope)
async def resume_schedule(name: str) -> Envelope:
    scheduler = get_runtime().scheduler
    if not scheduler.resume_workflow(name):
        raise NotFoundError(f"workflow '{name}' is not scheduled", detail={"workflow": name})
    return Envelope(status="ok", data=ScheduleResponse(**scheduler.get_schedule(name).to_dict()).model_dump())


@router.get("/actions", response_model=Envelope)
async def list_actions() -> Envelope:
    registry = get_runtime().registry
    actions = [ActionInfo(id=key, description=desc.description) for key, desc in registry.list(Kind.ACTION)]
    triggers = [
        TriggerInfo(id=key, mode=str(desc.mode), description=desc.description)
        for key, desc in registry.list(Kind.TRIGGER)
    ]
    return Envelope(
        status="ok",
        data={
            "actions": [item.model_dump() for item in actions],
            "triggers": [item.model_dump() for item in triggers],
        },
    )
