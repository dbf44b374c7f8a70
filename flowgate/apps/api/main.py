from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import Response
from starlette.datastructures import MutableHeaders
from starlette.exceptions import HTTPException as StarletteHTTPException

from flowgate.apps.api.errors import (
    flowgate_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from flowgate.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from flowgate.apps.api.routes.analytics import router as analytics_router
from flowgate.apps.api.routes.api_keys import router as api_keys_router
from flowgate.apps.api.routes.auth import router as auth_router
from flowgate.apps.api.routes.health import router as health_router
from flowgate.apps.api.routes.schemas import router as schemas_router
from flowgate.apps.api.routes.todos import router as todos_router
from flowgate.apps.api.routes.users import router as users_router
from flowgate.core.config import get_settings
from flowgate.core.errors import FlowgateError
from flowgate.core.logging import configure_logging
from flowgate.services import audit, background


logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {"/v1/health", "/v1/auth/register", "/v1/auth/login"}


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))


def _log_entry(
    request: Request,
    *,
    raw_body: bytes,
    status_code: int,
    started: float,
    response_body: bytes | None,
    error_message: str | None,
) -> audit.RequestLogEntry:
    # Identity is only known when authentication ran and succeeded.
    principal = getattr(request.state, "principal", None)
    ctx = audit.get_request_context(request)
    return audit.RequestLogEntry(
        request_id=ctx["request_id"],
        endpoint=request.url.path,
        method=request.method,
        status_code=status_code,
        response_time_ms=_elapsed_ms(started),
        user_id=principal.user_id if principal is not None else None,
        ip_address=ctx["ip_address"],
        user_agent=ctx["user_agent"],
        error_message=error_message,
        request_body=audit.capture_body(raw_body),
        response_body=audit.capture_body(response_body or b""),
        request_fingerprint=audit.fingerprint(raw_body),
    )


def _safe_log_entry(request: Request, **fields) -> audit.RequestLogEntry:
    # Capture must never fail the request; fall back to the fields that cannot raise.
    try:
        return _log_entry(request, **fields)
    except Exception as exc:
        logger.warning(
            "request_log_capture_failed path=%s error=%s", request.url.path, exc, exc_info=exc
        )
        principal = getattr(request.state, "principal", None)
        return audit.RequestLogEntry(
            request_id=getattr(request.state, "request_id", None),
            endpoint=request.url.path,
            method=request.method,
            status_code=fields["status_code"],
            response_time_ms=_elapsed_ms(fields["started"]),
            user_id=getattr(principal, "user_id", None),
            error_message=fields["error_message"],
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Flush queued request log writes before the process exits.
    await background.drain()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=f"{settings.app_name} API", lifespan=lifespan)

    @app.middleware("http")
    async def request_log_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        raw_body = await request.body()
        try:
            response = await call_next(request)
        except Exception as exc:
            # The 500 envelope is rendered further out; log the row here before it propagates.
            audit.record(
                _safe_log_entry(
                    request,
                    raw_body=raw_body,
                    status_code=500,
                    started=started,
                    response_body=None,
                    error_message=f"{type(exc).__name__}: {exc}",
                )
            )
            raise

        # Buffer the body so it can be logged, then hand an equivalent response back.
        body = b"".join([chunk async for chunk in response.body_iterator])
        buffered = Response(
            content=body,
            status_code=response.status_code,
            # Copy raw pairs so repeated headers such as Set-Cookie all survive.
            headers=MutableHeaders(raw=list(response.headers.raw)),
            media_type=response.media_type,
        )
        buffered.headers.setdefault(REQUEST_ID_HEADER, request_id)
        audit.record(
            _safe_log_entry(
                request,
                raw_body=raw_body,
                status_code=response.status_code,
                started=started,
                response_body=body,
                error_message=getattr(request.state, "error_message", None),
            )
        )
        return buffered

    app.add_exception_handler(FlowgateError, flowgate_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (
        health_router,
        auth_router,
        todos_router,
        users_router,
        api_keys_router,
        schemas_router,
        analytics_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into the OpenAPI schema for every non-public route.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title=app.title,
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
