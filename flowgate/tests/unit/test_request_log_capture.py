from __future__ import annotations

import hashlib
import json
import logging

from starlette.requests import Request

from flowgate.core.config import get_settings
from flowgate.services.audit import (
    RequestLogEntry,
    capture_body,
    client_ip,
    fingerprint,
    record,
    sanitize_payload,
)


def _request(headers: dict[str, str] | None = None, client: tuple[str, int] = ("10.0.0.9", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/v1/todos",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
        "query_string": b"",
    }
    return Request(scope)


def test_sensitive_keys_are_redacted_recursively() -> None:
    payload = {
        "username": "john",
        "password": "hunter2",
        "nested": {"access_token": "abc", "items": [{"api_key": "fgk_x"}, {"ok": 1}]},
    }
    sanitized = sanitize_payload(payload)
    assert sanitized["username"] == "john"
    assert sanitized["password"] == "[REDACTED]"
    assert sanitized["nested"]["access_token"] == "[REDACTED]"
    assert sanitized["nested"]["items"][0]["api_key"] == "[REDACTED]"
    assert sanitized["nested"]["items"][1] == {"ok": 1}


def test_capture_body_keeps_small_json_and_truncates_large_json() -> None:
    assert capture_body(b"") is None
    assert capture_body(b'{"title": "x", "password": "p"}') == {"title": "x", "password": "[REDACTED]"}

    large = json.dumps({"title": "a" * 100}).encode()
    captured = capture_body(large, max_chars=20)
    assert captured["truncated"] is True
    assert len(captured["preview"]) == 20


def test_capture_body_previews_non_json() -> None:
    captured = capture_body(b"title=hello", max_chars=100)
    assert captured == {"truncated": False, "preview": "title=hello"}


def test_fingerprint_hashes_raw_bytes() -> None:
    assert fingerprint(b"") is None
    assert fingerprint(b"abc") == hashlib.sha256(b"abc").hexdigest()


def test_client_ip_ignores_forwarded_for_unless_trusted(monkeypatch) -> None:
    request = _request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
    assert client_ip(request) == "10.0.0.9"

    monkeypatch.setenv("RL_TRUST_FORWARDED_FOR", "true")
    get_settings.cache_clear()
    assert client_ip(request) == "203.0.113.5"


def test_sanitize_payload_stops_at_a_fixed_depth() -> None:
    nested: list = []
    for _ in range(5000):
        nested = [nested]

    sanitized = sanitize_payload(nested)
    depth = 0
    while isinstance(sanitized, list):
        sanitized = sanitized[0]
        depth += 1
    assert sanitized == "[TRUNCATED]"
    assert depth == 32


def test_capture_body_keeps_a_preview_of_undecodable_nesting() -> None:
    captured = capture_body(b"[" * 50000 + b"]" * 50000, max_chars=10)
    assert captured == {"truncated": True, "preview": "[" * 10}


def test_record_without_running_loop_logs_instead_of_raising(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="flowgate.services.audit")
    record(
        RequestLogEntry(
            endpoint="/v1/todos",
            method="GET",
            status_code=200,
            response_time_ms=1,
            request_id="req-sync",
        )
    )
    assert "request_log_schedule_failed request_id=req-sync" in caplog.text
