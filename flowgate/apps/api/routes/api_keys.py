from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.apps.api.deps import Principal, get_db, require_role
from flowgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flowgate.apps.api.response import SuccessEnvelope, success_response
from flowgate.core.errors import NotFoundError
from flowgate.domain.models import ROLE_ADMIN, ROLE_USER, ApiKey
from flowgate.persistence.repos import api_keys as api_keys_repo


router = APIRouter(prefix="/api-keys", tags=["api-keys"], responses=DEFAULT_ERROR_RESPONSES)


class ApiKeyCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    expires_in_days: int | None = Field(default=None, ge=1, le=3650)


class ApiKeyResponse(BaseModel):
    key_id: int
    key_prefix: str
    name: str | None
    is_active: bool
    created_at: datetime | None
    last_used_at: datetime | None
    expires_at: datetime | None


class ApiKeyCreateResponse(ApiKeyResponse):
    # Returned exactly once; only the hash is stored.
    api_key: str


def _to_payload(api_key: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse(
        key_id=api_key.id,
        key_prefix=api_key.key_prefix,
        name=api_key.name,
        is_active=api_key.is_active,
        created_at=api_key.created_at,
        last_used_at=api_key.last_used_at,
        expires_at=api_key.expires_at,
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[ApiKeyCreateResponse])
async def create_api_key(
    payload: ApiKeyCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_USER)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    expires_at = None
    if payload.expires_in_days is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(days=payload.expires_in_days)
    api_key, raw_key = await api_keys_repo.create_api_key(
        db,
        user_id=principal.user_id,
        name=payload.name,
        expires_at=expires_at,
    )
    data = ApiKeyCreateResponse(**_to_payload(api_key).model_dump(), api_key=raw_key)
    return success_response(request=request, data=data)


@router.get("", response_model=SuccessEnvelope[list[ApiKeyResponse]])
async def list_api_keys(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_USER)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await api_keys_repo.list_api_keys(db, user_id=principal.user_id)
    return success_response(request=request, data=[_to_payload(api_key) for api_key, _user in rows])


@router.delete("/{key_id}", response_model=SuccessEnvelope[ApiKeyResponse])
async def deactivate_api_key(
    key_id: int,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_USER)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Admins may deactivate any key; everyone else only their own.
    owner_id = None if principal.role == ROLE_ADMIN else principal.user_id
    api_key = await api_keys_repo.get_api_key(db, key_id=key_id, user_id=owner_id)
    if api_key is None:
        raise NotFoundError("api key")
    api_key = await api_keys_repo.deactivate_api_key(db, api_key)
    return success_response(request=request, data=_to_payload(api_key))
