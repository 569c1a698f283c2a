"""Error envelope format and engine-error mapping.

Every error response has the shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from weavr.api.error_handling import _error_code_for_status, _error_response, register_exception_handlers
from weavr.api.schemas import Envelope, ErrorBody, filter_webhook_headers
from weavr.service.errors import (
    ActionExecutionError,
    CyclicDependency,
    NoCredentials,
    ParseError,
    RequestTimeout,
    RetryExhausted,
    SchedulerBindingError,
    TemplateResolutionError,
    UnknownDependency,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="not_found", message="run not found")

        assert error.details is None

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="conflict", message="bound", details={"workflow": "a"}),
            request_id="req-1",
        )

        dumped = envelope.model_dump()

        assert dumped == {
            "status": "error",
            "data": None,
            "error": {"code": "conflict", "message": "bound", "details": {"workflow": "a"}},
            "request_id": "req-1",
        }


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [(400, "validation_error"), (404, "not_found"), (409, "conflict"), (424, "no_credentials"),
         (502, "upstream_error"), (504, "timeout"), (418, "server_error")],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_error_response_body(self):
        response = _error_response(404, "missing", details=[{"id": "a"}])

        data = json.loads(response.body.decode())
        assert response.status_code == 404
        assert data["error"] == {"code": "not_found", "message": "missing", "details": [{"id": "a"}]}


class TestEngineErrors:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (ParseError("bad"), 400, "parse_error"),
            (UnknownDependency("a", "b"), 400, "unknown_dependency"),
            (CyclicDependency(["a", "b", "a"]), 400, "cyclic_dependency"),
            (TemplateResolutionError("x"), 400, "template_error"),
            (SchedulerBindingError("taken"), 409, "conflict"),
            (NoCredentials("none"), 424, "no_credentials"),
            (ActionExecutionError("boom"), 500, "action_failed"),
            (RetryExhausted("gave up", status=503), 502, "upstream_error"),
            (RequestTimeout("slow"), 504, "timeout"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        assert (exc.status_code, exc.error_code) == (status, code)

    def test_handlers_render_envelopes(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/credentials")
        async def credentials():
            raise NoCredentials("configure a provider", detail={"hint": "ai.apiKey"})

        @app.get("/crash")
        async def crash():
            raise RuntimeError("secret internals")

        client = TestClient(app, raise_server_exceptions=False)

        missing = client.get("/credentials")
        crashed = client.get("/crash")

        assert missing.status_code == 424
        assert missing.json()["error"] == {
            "code": "no_credentials",
            "message": "configure a provider",
            "details": {"hint": "ai.apiKey"},
        }
        assert crashed.status_code == 500
        assert crashed.json()["error"]["message"] == "internal server error"
        assert "secret" not in crashed.text

    def test_unknown_route_uses_envelope(self):
        app = FastAPI()
        register_exception_handlers(app)

        response = TestClient(app).get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


def test_webhook_headers_drop_credentials():
    headers = {"Authorization": "Bearer x", "Cookie": "a=b", "X-Event": "push"}

    assert filter_webhook_headers(headers) == {"x-event": "push"}
