from __future__ import annotations

import structlog

from stealthmax_services.logging import _redact_secrets, bind_context, clear_context


def test_secrets_are_masked():
    ev = _redact_secrets(None, "info", {"event": "x", "private_key": "0xdead", "Authorization": "k", "name": "alice"})
    assert ev["private_key"] == "***"
    assert ev["Authorization"] == "***"
    assert ev["name"] == "alice"


def test_none_values_are_left_alone():
    assert _redact_secrets(None, "info", {"api_key": None})["api_key"] is None


def test_context_binding():
    clear_context()
    bind_context(request_id="r1", name="alice")
    assert structlog.contextvars.get_contextvars() == {"request_id": "r1", "name": "alice"}
    clear_context("name")
    assert structlog.contextvars.get_contextvars() == {"request_id": "r1"}
    clear_context()
    assert structlog.contextvars.get_contextvars() == {}
