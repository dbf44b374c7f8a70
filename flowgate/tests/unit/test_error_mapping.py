from __future__ import annotations

import json

from fastapi.exceptions import RequestValidationError
from starlette.requests import Request

from flowgate.apps.api.errors import (
    UNAUTHORIZED_MESSAGE,
    flowgate_exception_handler,
    validation_exception_handler,
)
from flowgate.core.errors import (
    DatabaseError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    ValidationFailedError,
)


def _request() -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/v1/todos",
        "headers": [(b"x-request-id", b"req-1")],
        "client": ("127.0.0.1", 1234),
        "query_string": b"",
    }
    return Request(scope)


async def test_rate_limited_maps_to_429_with_retry_after() -> None:
    request = _request()
    response = await flowgate_exception_handler(request, RateLimitedError(55, scope="short"))
    body = json.loads(response.body)
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "55"
    assert body["error"]["code"] == "RATE_LIMITED"
    assert body["error"]["details"] == {"scope": "short", "retry_after_s": 55}
    assert body["meta"]["request_id"] == "req-1"
    assert "retry_after=55" in request.state.error_message


async def test_every_unauthorized_reason_shares_one_message() -> None:
    bodies = []
    for reason in ("api_key_expired", "api_key_unknown", "token_expired"):
        request = _request()
        response = await flowgate_exception_handler(request, UnauthorizedError(reason))
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert reason in request.state.error_message
        bodies.append(json.loads(response.body)["error"])
    assert all(body == {"code": "AUTH_UNAUTHORIZED", "message": UNAUTHORIZED_MESSAGE} for body in bodies)


async def test_validation_and_not_found_and_database_errors() -> None:
    response = await flowgate_exception_handler(_request(), ValidationFailedError("title", "must not be null"))
    assert response.status_code == 400
    assert json.loads(response.body)["error"]["details"] == {"field": "title", "reason": "must not be null"}

    response = await flowgate_exception_handler(_request(), NotFoundError("todo"))
    assert response.status_code == 404
    assert json.loads(response.body)["error"]["message"] == "todo not found"

    response = await flowgate_exception_handler(_request(), DatabaseError("connection refused"))
    body = json.loads(response.body)
    assert response.status_code == 500
    assert body["error"] == {"code": "INTERNAL_ERROR", "message": "Internal server error"}


async def test_request_validation_error_reports_first_field_as_400() -> None:
    exc = RequestValidationError(
        [
            {"loc": ("body", "title"), "msg": "Field required", "type": "missing"},
            {"loc": ("query", "limit"), "msg": "too big", "type": "less_than_equal"},
        ]
    )
    request = _request()
    response = await validation_exception_handler(request, exc)
    body = json.loads(response.body)
    assert response.status_code == 400
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert body["error"]["details"]["field"] == "title"
    assert body["error"]["details"]["reason"] == "Field required"
    assert len(body["error"]["details"]["errors"]) == 2
    assert request.state.error_message == "validation failed: title: Field required"
