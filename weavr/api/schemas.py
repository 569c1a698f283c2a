from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Stable error codes carried by WeavrError subclasses plus the generic HTTP ones
_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "parse_error",
    "unknown_dependency",
    "cyclic_dependency",
    "template_error",
    "not_found",
    "conflict",
    "no_credentials",
    "action_failed",
    "upstream_error",
    "timeout",
    "server_error",
})

MAX_WEBHOOK_HEADERS = 100


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RunWorkflowRequest(BaseModel):
    data: Optional[Any] = Field(None, description="Exposed to templates as trigger.data")
    wait: bool = Field(False, description="Return the finished run instead of its id")


class WebhookAccepted(BaseModel):
    triggered: bool
    run_ids: List[str] = Field(default_factory=list)
    workflows: List[str] = Field(default_factory=list)


class ScheduleResponse(BaseModel):
    name: str
    trigger_type: str
    mode: str
    status: str
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    next_run: Optional[str] = None
    last_run: Optional[str] = None
    last_status: Optional[str] = None
    last_run_id: Optional[str] = None


class ActionInfo(BaseModel):
    id: str
    description: str = ""


class TriggerInfo(BaseModel):
    id: str
    mode: str
    description: str = ""


def filter_webhook_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Drop credentials before headers are exposed to workflow templates."""
    hidden = {"authorization", "cookie", "proxy-authorization"}
    kept = {k.lower(): v for k, v in headers.items() if k.lower() not in hidden}
    return dict(list(kept.items())[:MAX_WEBHOOK_HEADERS])
