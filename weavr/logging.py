from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

# Run id of the workflow run currently executing in this task
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)


def get_run_id() -> Optional[str]:
    """Get the run ID bound to the current task, if any."""
    return run_id_var.get()


@contextmanager
def bind_run_id(run_id: str) -> Iterator[str]:
    """Bind ``run_id`` to every log entry emitted inside the block."""
    token = run_id_var.set(run_id)
    try:
        yield run_id
    finally:
        run_id_var.reset(token)


def _add_run_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add run_id to all log entries."""
    rid = get_run_id()
    if rid and "run_id" not in event_dict:
        event_dict["run_id"] = rid
    return event_dict


_SECRET_KEYS = {"password", "secret", "token", "api_key", "apikey", "authorization"}


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials from log entries."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(secret in lower_key for secret in _SECRET_KEYS):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # Redact but preserve first/last 2 chars for debugging
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_run_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with run ID support."""
    return structlog.get_logger(name)


def log_run_trace(run: Any, logger: Optional[Any] = None) -> None:
    """Log the per-step outcome of a finished run."""
    log = logger or get_logger("executor")
    trace = [
        {
            "step_id": step_id,
            "status": str(result.status),
            "duration_ms": result.duration_ms,
        }
        for step_id, result in run.steps.items()
    ]
    log.info("run_trace", run_id=run.id, workflow=run.workflow_name, trace=trace)


_SENSITIVE_ERROR_PATTERNS = [
    # Credential patterns
    r'(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+',
    r'(?i)bearer\s+[a-z0-9._\-]+',
    # Stack traces
    r'(?i)traceback\s*\(most recent call last\)',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]

MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Redact credentials and cap the length of an error string.

    Step and run errors are kept in the run history and broadcast to gateway
    observers, so anything that looks like a secret is replaced before the
    message is recorded.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_ERROR_LENGTH:
        result = result[: MAX_ERROR_LENGTH - 3] + "..."

    return result
