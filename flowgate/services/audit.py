from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import hashlib
import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.requests import Request

from flowgate.core.config import get_settings
from flowgate.domain.models import RequestLog
from flowgate.persistence.db import SessionLocal
from flowgate.services import background


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"
_TRUNCATED_VALUE = "[TRUNCATED]"
# Nesting below this depth is not kept in the log row.
_MAX_PAYLOAD_DEPTH = 32


@dataclass
class RequestLogEntry:
    # One request's accounting record; user_id stays None when auth never ran or failed.
    endpoint: str
    method: str
    status_code: int
    response_time_ms: int
    request_id: str | None = None
    user_id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    error_message: str | None = None
    request_body: Any | None = None
    response_body: Any | None = None
    request_fingerprint: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_payload(value: Any, *, _depth: int = 0) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure, up to a fixed depth.
    if isinstance(value, (dict, list)) and _depth >= _MAX_PAYLOAD_DEPTH:
        return _TRUNCATED_VALUE
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_payload(raw_value, _depth=_depth + 1)
        return sanitized
    if isinstance(value, list):
        return [sanitize_payload(item, _depth=_depth + 1) for item in value]
    return value


def fingerprint(raw: bytes) -> str | None:
    if not raw:
        return None
    return hashlib.sha256(raw).hexdigest()


def capture_body(raw: bytes, *, max_chars: int | None = None) -> Any | None:
    """Turn a raw body into a JSON-storable, redacted, size-bounded value."""
    if not raw:
        return None
    limit = max_chars if max_chars is not None else get_settings().request_log_body_max_chars
    text = raw.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        # Undecodable or pathologically nested bodies are kept as a text preview.
        return {"truncated": len(text) > limit, "preview": text[:limit]}
    sanitized = sanitize_payload(parsed)
    serialized = json.dumps(sanitized, ensure_ascii=False)
    if len(serialized) > limit:
        return {"truncated": True, "preview": serialized[:limit]}
    return sanitized


def client_ip(request: Request) -> str | None:
    # Prefer the first forwarded hop only behind a trusted proxy.
    if get_settings().rl_trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else None


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    return {
        "request_id": request_id,
        "ip_address": client_ip(request),
        "user_agent": request.headers.get("user-agent"),
    }


def _to_row(entry: RequestLogEntry) -> RequestLog:
    return RequestLog(
        request_id=entry.request_id,
        endpoint=entry.endpoint[:255],
        method=entry.method[:10],
        user_id=entry.user_id,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        status_code=entry.status_code,
        response_time=entry.response_time_ms,
        error_message=entry.error_message,
        request_body=entry.request_body,
        response_body=entry.response_body,
        request_fingerprint=entry.request_fingerprint,
        created_at=entry.created_at,
    )


async def write_entry(entry: RequestLogEntry) -> bool:
    # Insert one log row in its own session; failures go to the process log, never to the caller.
    async with SessionLocal() as session:
        try:
            session.add(_to_row(entry))
            await session.commit()
            return True
        except IntegrityError as exc:
            await session.rollback()
            conflict = exc
        except SQLAlchemyError as exc:
            await session.rollback()
            _log_write_failure(entry, exc)
            return False

    if entry.user_id is None:
        _log_write_failure(entry, conflict)
        return False
    # Signed tokens are stateless and may name a user that no longer exists; keep the row unlinked.
    note = f"unknown user_id={entry.user_id}"
    message = f"{entry.error_message}; {note}" if entry.error_message else note
    return await write_entry(replace(entry, user_id=None, error_message=message))


def _log_write_failure(entry: RequestLogEntry, exc: Exception) -> None:
    logger.warning(
        "request_log_write_failed request_id=%s method=%s endpoint=%s status=%s "
        "user_id=%s latency_ms=%s error=%s",
        entry.request_id,
        entry.method,
        entry.endpoint,
        entry.status_code,
        entry.user_id,
        entry.response_time_ms,
        entry.error_message,
        exc_info=exc,
    )


def record(entry: RequestLogEntry) -> None:
    """Schedule a request log write without blocking or raising into the request path."""
    pending = write_entry(entry)
    try:
        background.spawn(pending, name=f"request_log:{entry.request_id}")
    except RuntimeError:
        # No running loop (e.g. called from sync code); nothing can be scheduled.
        pending.close()
        logger.warning(
            "request_log_schedule_failed request_id=%s endpoint=%s status=%s",
            entry.request_id,
            entry.endpoint,
            entry.status_code,
        )
