from __future__ import annotations

from typing import Iterable, Optional


class WeavrError(Exception):
    """Base class for engine exceptions.

    Each exception class carries both an HTTP ``status_code`` and a stable
    ``error_code`` so the gateway can map it to an error envelope without
    knowing the engine's taxonomy:
    - parse_error (400)
    - not_found (404)
    - conflict (409)
    - no_credentials (424)
    - action_failed (500)
    - upstream_error (502)
    - timeout (504)
    """

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ParseError(WeavrError):
    """Workflow source is malformed or fails validation (400)."""
    status_code = 400
    error_code = "parse_error"


class UnknownDependency(ParseError):
    """A ``needs`` entry names a step that is not declared."""

    def __init__(self, step_id: str, missing: str) -> None:
        super().__init__(
            f"step '{step_id}' needs unknown step '{missing}'",
            detail={"step": step_id, "missing": missing},
            error_code="unknown_dependency",
        )
        self.step_id = step_id
        self.missing = missing


class CyclicDependency(ParseError):
    """The ``needs`` graph contains a cycle."""

    def __init__(self, cycle: Iterable[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(
            f"cyclic dependency: {' -> '.join(self.cycle)}",
            detail={"cycle": self.cycle},
            error_code="cyclic_dependency",
        )


class DuplicateRegistration(WeavrError):
    """An action or trigger id is already registered (409)."""
    status_code = 409
    error_code = "conflict"


class NotFoundError(WeavrError):
    """Requested registry entry, run or schedule not found (404)."""
    status_code = 404
    error_code = "not_found"


class ActionExecutionError(WeavrError):
    """An action failed while executing one step."""
    status_code = 500
    error_code = "action_failed"


class RetryExhausted(ActionExecutionError):
    """Outbound call kept failing after every allowed retry (502)."""
    status_code = 502
    error_code = "upstream_error"

    def __init__(self, message: str, *, status: Optional[int], body_prefix: str = "") -> None:
        super().__init__(message, detail={"status": status, "body": body_prefix})
        self.status = status
        self.body_prefix = body_prefix


class RequestTimeout(ActionExecutionError):
    """Outbound call exceeded its hard timeout (504)."""
    status_code = 504
    error_code = "timeout"


class NoCredentials(WeavrError):
    """No usable AI provider credential is configured (424)."""
    status_code = 424
    error_code = "no_credentials"


class SchedulerBindingError(WeavrError):
    """A trigger binding conflicts with an existing one (409)."""
    status_code = 409
    error_code = "conflict"


class TemplateResolutionError(WeavrError):
    """Strict template mode hit an unresolvable path (400)."""
    status_code = 400
    error_code = "template_error"


class ToolServerError(WeavrError):
    """External tool server failed to start or answer (502)."""
    status_code = 502
    error_code = "upstream_error"


__all__ = [
    "WeavrError",
    "ParseError",
    "UnknownDependency",
    "CyclicDependency",
    "DuplicateRegistration",
    "NotFoundError",
    "ActionExecutionError",
    "RetryExhausted",
    "RequestTimeout",
    "NoCredentials",
    "SchedulerBindingError",
    "TemplateResolutionError",
    "ToolServerError",
]
