from weavr.logging import _add_run_id, _redact_secrets, bind_run_id, get_run_id, sanitize_error_message


def test_bind_run_id_scopes_context():
    assert get_run_id() is None

    with bind_run_id("run-42"):
        assert _add_run_id(None, "info", {"event": "x"}) == {"event": "x", "run_id": "run-42"}

    assert get_run_id() is None


def test_redact_secrets_keeps_edges():
    event = _redact_secrets(None, "info", {"api_key": "sk-abcdef123", "workflow": "digest"})

    assert event == {"api_key": "sk***23", "workflow": "digest"}


def test_sanitize_error_message_redacts_credentials():
    message = sanitize_error_message("upstream said: api_key=sk-live-123 and Bearer abc.def")

    assert "sk-live-123" not in message
    assert "abc.def" not in message
    assert message.count("[redacted]") == 2


def test_sanitize_error_message_caps_length():
    assert len(sanitize_error_message("x" * 2000)) == 500
    assert sanitize_error_message("") == "An error occurred"
