from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.apps.api.deps import Principal, get_db, require_role
from flowgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flowgate.apps.api.response import SuccessEnvelope, success_response
from flowgate.domain.models import ROLE_ADMIN
from flowgate.services import analytics


router = APIRouter(prefix="/analytics", tags=["analytics"], responses=DEFAULT_ERROR_RESPONSES)


class EndpointUsage(BaseModel):
    endpoint: str
    method: str
    total_requests: int
    unique_users: int
    avg_response_time_ms: float | None
    max_response_time_ms: int | None
    min_response_time_ms: int | None
    success_count: int
    error_count: int
    success_rate_percent: float | None


class RecentError(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_id: str | None
    endpoint: str
    method: str
    status_code: int | None
    error_message: str | None
    user_id: int | None
    created_at: datetime


class UserActivity(BaseModel):
    user_id: int
    username: str
    role: str
    total_requests: int
    active_days: int
    last_activity: datetime | None
    total_todos: int
    completed_todos: int


@router.get("/usage", response_model=SuccessEnvelope[list[EndpointUsage]])
async def usage(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await analytics.api_usage_stats(db)
    return success_response(request=request, data=[EndpointUsage(**row) for row in rows])


@router.get("/errors", response_model=SuccessEnvelope[list[RecentError]])
async def errors(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await analytics.recent_errors(db)
    return success_response(request=request, data=[RecentError.model_validate(row) for row in rows])


@router.get("/users", response_model=SuccessEnvelope[list[UserActivity]])
async def users(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await analytics.user_activity(db)
    return success_response(request=request, data=[UserActivity(**row) for row in rows])
