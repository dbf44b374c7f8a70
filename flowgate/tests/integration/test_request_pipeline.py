from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from flowgate.apps.api import rate_limit
from flowgate.apps.api.errors import UNAUTHORIZED_MESSAGE
from flowgate.core.config import get_settings
from flowgate.domain.models import ApiKey, RateLimitWindow, RequestLog
from flowgate.persistence.db import SessionLocal
from flowgate.persistence.repos import todos as todos_repo
from flowgate.services import background
from flowgate.tests.utils.auth import create_test_api_key, create_test_user, token_headers
from flowgate.tests.utils.clock import WINDOW_ALIGNED_START, FakeClock
from flowgate.tests.utils.http import api_client


def _apply_rate_limit_env(monkeypatch, **overrides: str) -> None:
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    for key, value in overrides.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()


async def _request_logs() -> list[RequestLog]:
    await background.drain()
    async with SessionLocal() as session:
        result = await session.execute(select(RequestLog).order_by(RequestLog.created_at, RequestLog.id))
        return list(result.scalars().all())


async def _windows(identifier: str) -> list[RateLimitWindow]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(RateLimitWindow)
            .where(RateLimitWindow.identifier == identifier)
            .order_by(RateLimitWindow.window_end, RateLimitWindow.id)
        )
        return list(result.scalars().all())


async def test_health_is_enveloped_and_echoes_request_id() -> None:
    async with api_client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-abc"})
    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-abc"
    body = response.json()
    assert body["data"] == {"status": "ok", "service": "flowgate", "rate_limiting": True}
    assert body["meta"] == {"request_id": "req-abc", "api_version": "v1"}

    logs = await _request_logs()
    assert len(logs) == 1
    assert logs[0].request_id == "req-abc"


async def test_sixty_first_request_in_a_minute_is_rejected_until_rollover(monkeypatch) -> None:
    _apply_rate_limit_env(monkeypatch)
    clock = FakeClock()
    rate_limit.set_rate_limiter(rate_limit.RateLimiter(time_provider=clock))
    user = await create_test_user()
    headers = token_headers(user)

    async with api_client() as client:
        clock.at(0)
        for index in range(60):
            response = await client.get("/v1/todos", headers=headers)
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Remaining"] == str(59 - index)

        clock.at(5)
        rejected = await client.get("/v1/todos", headers=headers)

        clock.at(61)
        after_rollover = await client.get("/v1/todos", headers=headers)

    assert rejected.status_code == 429
    assert rejected.headers["Retry-After"] == "55"
    assert rejected.json()["error"]["code"] == "RATE_LIMITED"
    assert after_rollover.status_code == 200

    short_windows = [
        row
        for row in await _windows(f"user:{user.id}")
        if row.window_end - row.window_start == timedelta(seconds=60)
    ]
    by_start = {row.window_start.replace(tzinfo=timezone.utc): row.request_count for row in short_windows}
    assert by_start[WINDOW_ALIGNED_START] == 61
    assert by_start[WINDOW_ALIGNED_START + timedelta(seconds=60)] == 1


async def test_rate_limit_runs_before_auth_and_keys_anonymous_clients_by_ip(monkeypatch) -> None:
    _apply_rate_limit_env(monkeypatch, RL_SHORT_LIMIT=2)
    async with api_client() as client:
        statuses = [(await client.get("/v1/todos")).status_code for _ in range(3)]
    assert statuses == [401, 401, 429]

    windows = await _windows("ip:127.0.0.1")
    assert {row.endpoint for row in windows} == {"/v1/todos"}
    assert max(row.request_count for row in windows) == 3

    logs = await _request_logs()
    assert [log.status_code for log in logs] == [401, 401, 429]
    assert all(log.user_id is None for log in logs)
    assert logs[0].error_message == "unauthorized: credential_missing"
    assert logs[2].error_message.startswith("rate limited")


async def test_forwarded_for_is_used_only_when_trusted(monkeypatch) -> None:
    _apply_rate_limit_env(monkeypatch, RL_TRUST_FORWARDED_FOR="true")
    async with api_client() as client:
        await client.get("/v1/todos", headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
    assert len(await _windows("ip:203.0.113.5")) == 2
    assert await _windows("ip:127.0.0.1") == []


async def test_path_parameters_share_one_endpoint_budget(monkeypatch) -> None:
    _apply_rate_limit_env(monkeypatch, RL_SHORT_LIMIT=2)
    user = await create_test_user()
    headers = token_headers(user)
    async with api_client() as client:
        statuses = [
            (await client.get(f"/v1/todos/{todo_id}", headers=headers)).status_code for todo_id in (1, 2, 3)
        ]
    assert statuses == [404, 404, 429]
    assert {row.endpoint for row in await _windows(f"user:{user.id}")} == {"/v1/todos/{todo_id}"}


async def test_rate_limiting_can_be_disabled(monkeypatch) -> None:
    _apply_rate_limit_env(monkeypatch, RATE_LIMIT_ENABLED="false", RL_SHORT_LIMIT=1)
    async with api_client() as client:
        statuses = [(await client.get("/v1/todos")).status_code for _ in range(3)]
    assert statuses == [401, 401, 401]
    assert await _windows("ip:127.0.0.1") == []


async def test_expired_api_key_gets_the_same_401_as_an_unknown_key() -> None:
    user = await create_test_user()
    _raw, expired_headers, _key_id = await create_test_api_key(
        user=user, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)
    )
    unknown_headers = {"Authorization": f"Bearer {get_settings().api_key_prefix}_does-not-exist"}

    async with api_client() as client:
        expired = await client.get("/v1/auth/me", headers=expired_headers)
        unknown = await client.get("/v1/auth/me", headers=unknown_headers)

    assert expired.status_code == unknown.status_code == 401
    assert expired.json()["error"] == unknown.json()["error"]
    assert expired.json()["error"]["message"] == UNAUTHORIZED_MESSAGE
    assert expired.headers["WWW-Authenticate"] == "Bearer"

    logs = await _request_logs()
    assert [log.error_message for log in logs] == [
        "unauthorized: api_key_expired",
        "unauthorized: api_key_unknown",
    ]
    assert all(log.user_id is None for log in logs)


async def test_inactive_keys_and_inactive_owners_are_rejected() -> None:
    user = await create_test_user()
    _raw, inactive_headers, _ = await create_test_api_key(user=user, is_active=False)
    inactive_user = await create_test_user(is_active=False)
    _raw, orphan_headers, _ = await create_test_api_key(user=inactive_user)

    async with api_client() as client:
        assert (await client.get("/v1/auth/me", headers=inactive_headers)).status_code == 401
        assert (await client.get("/v1/auth/me", headers=orphan_headers)).status_code == 401
        malformed = await client.get("/v1/auth/me", headers={"Authorization": "Token abc"})
    assert malformed.status_code == 401

    logs = await _request_logs()
    assert [log.error_message for log in logs] == [
        "unauthorized: api_key_inactive",
        "unauthorized: user_inactive",
        "unauthorized: credential_malformed",
    ]


async def test_valid_api_key_authenticates_and_touches_last_used() -> None:
    user = await create_test_user()
    _raw, headers, key_id = await create_test_api_key(user=user)

    async with api_client() as client:
        response = await client.get("/v1/auth/me", headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["username"] == user.username
    await background.drain()
    async with SessionLocal() as session:
        api_key = await session.get(ApiKey, key_id)
    assert api_key is not None
    assert api_key.last_used_at is not None

    logs = await _request_logs()
    assert logs[0].user_id == user.id


async def test_every_request_writes_exactly_one_log_row() -> None:
    user = await create_test_user()
    headers = token_headers(user)
    async with api_client() as client:
        await client.get("/v1/health")
        await client.get("/v1/todos")
        await client.post("/v1/todos", json={"description": "no title"}, headers=headers)
        await client.get("/v1/todos/999", headers=headers)
        await client.get("/v1/users", headers=headers)
        await client.post("/v1/todos", json={"title": "ship it"}, headers=headers)
        await client.get("/v1/does-not-exist")

    logs = await _request_logs()
    assert [(log.method, log.endpoint, log.status_code) for log in logs] == [
        ("GET", "/v1/health", 200),
        ("GET", "/v1/todos", 401),
        ("POST", "/v1/todos", 400),
        ("GET", "/v1/todos/999", 404),
        ("GET", "/v1/users", 403),
        ("POST", "/v1/todos", 201),
        ("GET", "/v1/does-not-exist", 404),
    ]
    assert [log.user_id for log in logs] == [None, None, user.id, user.id, user.id, user.id, None]
    assert logs[2].error_message == "validation failed: title: Field required"
    assert logs[5].request_body == {"title": "ship it"}
    assert logs[5].response_body["data"]["title"] == "ship it"
    assert logs[5].request_fingerprint is not None
    assert all(log.response_time is not None and log.response_time >= 0 for log in logs)
    assert all(log.user_agent for log in logs)


async def test_request_log_redacts_credentials() -> None:
    async with api_client() as client:
        await client.post(
            "/v1/auth/register",
            json={"username": "redacted-user", "password": "supersecret1"},
        )
    logs = await _request_logs()
    assert logs[0].status_code == 201
    assert logs[0].request_body == {"username": "redacted-user", "password": "[REDACTED]"}


async def test_unhandled_error_returns_500_envelope_and_is_logged(monkeypatch) -> None:
    async def _boom(*args, **kwargs):
        raise RuntimeError("boom: connection details")

    monkeypatch.setattr(todos_repo, "list_todos", _boom)
    user = await create_test_user()
    async with api_client() as client:
        response = await client.get("/v1/todos", headers=token_headers(user))

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == {"code": "INTERNAL_ERROR", "message": "Internal server error"}
    assert "boom" not in response.text

    logs = await _request_logs()
    assert len(logs) == 1
    assert logs[0].status_code == 500
    assert "boom" in logs[0].error_message
    assert logs[0].user_id == user.id


async def test_forwarded_client_example_on_todos(monkeypatch) -> None:
    _apply_rate_limit_env(monkeypatch, RL_TRUST_FORWARDED_FOR="true")
    clock = FakeClock()
    rate_limit.set_rate_limiter(rate_limit.RateLimiter(time_provider=clock))
    headers = {"X-Forwarded-For": "203.0.113.5"}

    async with api_client() as client:
        clock.at(0)
        first_sixty = [(await client.get("/v1/todos", headers=headers)).status_code for _ in range(60)]
        clock.at(5)
        rejected = await client.get("/v1/todos", headers=headers)
        clock.at(61)
        rolled_over = await client.get("/v1/todos", headers=headers)

    # Admitted requests still fail authentication; only the 61st is stopped by the limiter.
    assert set(first_sixty) == {401}
    assert rejected.status_code == 429
    assert rejected.json()["error"]["details"] == {"scope": "short", "retry_after_s": 55}
    assert rolled_over.status_code == 401

    latest_short = [
        row
        for row in await _windows("ip:203.0.113.5")
        if row.window_end - row.window_start == timedelta(seconds=60)
    ][-1]
    assert latest_short.request_count == 1
