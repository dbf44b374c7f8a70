from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from flowgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flowgate.apps.api.response import SuccessEnvelope, success_response
from flowgate.core.config import get_settings

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    service: str
    rate_limiting: bool


# Liveness only: no store round trip, no rate limit, no credentials.
@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    settings = get_settings()
    payload = HealthResponse(
        status="ok",
        service=settings.app_name,
        rate_limiting=settings.rate_limit_enabled,
    )
    return success_response(request=request, data=payload)
