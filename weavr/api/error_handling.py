from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from weavr.api.schemas import Envelope, ErrorBody
from weavr.logging import get_logger
from weavr.service.errors import WeavrError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    424: "no_credentials",
    500: "server_error",
    502: "upstream_error",
    504: "timeout",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Render engine errors, HTTP errors and crashes as error envelopes."""

    @app.exception_handler(WeavrError)
    async def handle_weavr_error(request: Request, exc: WeavrError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "engine_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail or None, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning("request_validation_error", path=request.url.path, method=request.method)
        details = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ]
        return _error_response(400, "invalid request", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error", path=request.url.path, method=request.method, status_code=exc.status_code
            )
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
