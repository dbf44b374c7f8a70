from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from flowgate.apps.api.response import (
    REQUEST_ID_HEADER,
    error_response,
    get_request_id,
    is_versioned_request,
)
from flowgate.core.errors import (
    ConflictError,
    DatabaseError,
    FlowgateError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
    ValidationFailedError,
)


logger = logging.getLogger(__name__)

# One message for every credential failure so clients cannot tell which check failed.
UNAUTHORIZED_MESSAGE = "Invalid or missing credentials"

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _note_error(request: Request, message: str) -> None:
    # The request log middleware picks this up for the audit row.
    request.state.error_message = message


def _json(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    response = JSONResponse(content=payload, status_code=status_code, headers=headers)
    response.headers.setdefault(REQUEST_ID_HEADER, get_request_id(request))
    return response


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def flowgate_exception_handler(request: Request, exc: FlowgateError) -> JSONResponse:
    if isinstance(exc, RateLimitedError):
        _note_error(request, f"rate limited scope={exc.scope} retry_after={exc.retry_after}")
        return _json(
            request,
            status_code=429,
            code="RATE_LIMITED",
            message="Rate limit exceeded",
            details={"scope": exc.scope, "retry_after_s": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, UnauthorizedError):
        _note_error(request, f"unauthorized: {exc.reason}")
        return _json(
            request,
            status_code=401,
            code="AUTH_UNAUTHORIZED",
            message=UNAUTHORIZED_MESSAGE,
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(exc, ForbiddenError):
        message = str(exc) or "Insufficient role for this operation"
        _note_error(request, f"forbidden: {message}")
        return _json(request, status_code=403, code="AUTH_FORBIDDEN", message=message)
    if isinstance(exc, ValidationFailedError):
        _note_error(request, f"validation failed: {exc.field}: {exc.reason}")
        return _json(
            request,
            status_code=400,
            code="VALIDATION_ERROR",
            message=f"{exc.field}: {exc.reason}",
            details={"field": exc.field, "reason": exc.reason},
        )
    if isinstance(exc, NotFoundError):
        _note_error(request, str(exc))
        return _json(request, status_code=404, code="NOT_FOUND", message=str(exc))
    if isinstance(exc, ConflictError):
        _note_error(request, f"conflict: {exc}")
        return _json(request, status_code=409, code="CONFLICT", message=str(exc))

    # DatabaseError and anything else: keep internals server-side.
    level = logging.ERROR if isinstance(exc, DatabaseError) else logging.WARNING
    logger.log(level, "request_failed path=%s error=%s", request.url.path, exc, exc_info=exc)
    _note_error(request, f"{type(exc).__name__}: {exc}")
    return _json(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    _note_error(request, message)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    return _json(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Routing errors (unknown path, wrong method) never reach a FastAPI HTTPException handler.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    _note_error(request, message)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    return _json(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


def _field_name(loc: tuple[Any, ...] | list[Any]) -> str:
    # Drop the "body"/"query"/"path" source prefix; keep nested field paths dotted.
    parts = [str(part) for part in loc]
    if parts and parts[0] in {"body", "query", "path", "header"}:
        parts = parts[1:]
    return ".".join(parts) or "body"


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Report the first failing field as the headline and the full list for clients that want it.
    errors = [
        {"loc": list(error.get("loc", ())), "msg": str(error.get("msg", "")), "type": error.get("type")}
        for error in exc.errors()
    ]
    if errors:
        field = _field_name(errors[0]["loc"])
        reason = errors[0]["msg"]
    else:
        field, reason = "body", "Invalid request"
    _note_error(request, f"validation failed: {field}: {reason}")
    return _json(
        request,
        status_code=400,
        code="VALIDATION_ERROR",
        message=f"{field}: {reason}",
        details={"field": field, "reason": reason, "errors": errors},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    _note_error(request, f"{type(exc).__name__}: {exc}")
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    return _json(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
