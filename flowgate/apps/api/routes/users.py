from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.apps.api.deps import Principal, get_db, require_role
from flowgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flowgate.apps.api.response import SuccessEnvelope, success_response
from flowgate.apps.api.routes.auth import UserResponse
from flowgate.core.errors import NotFoundError
from flowgate.domain.models import ROLE_ADMIN
from flowgate.persistence.repos import users as users_repo


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"], responses=DEFAULT_ERROR_RESPONSES)


class UserPatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["admin", "user"] | None = None
    # Reversible deactivation; users are never hard-deleted.
    is_active: bool | None = None
    email: str | None = Field(default=None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class UserListResponse(BaseModel):
    items: list[UserResponse]
    offset: int
    limit: int


@router.get("", response_model=SuccessEnvelope[UserListResponse])
async def list_users(
    request: Request,
    is_active: bool | None = Query(default=None),
    role: Literal["admin", "user"] | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=100),
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await users_repo.list_users(db, is_active=is_active, role=role, offset=offset, limit=limit)
    return success_response(
        request=request,
        data=UserListResponse(
            items=[UserResponse.model_validate(row) for row in rows],
            offset=offset,
            limit=limit,
        ),
    )


@router.patch("/{user_id}", response_model=SuccessEnvelope[UserResponse])
async def patch_user(
    user_id: int,
    payload: UserPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role(ROLE_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await users_repo.get_user(db, user_id)
    if user is None:
        raise NotFoundError("user")
    user = await users_repo.update_user(
        db,
        user,
        role=payload.role,
        is_active=payload.is_active,
        email=payload.email,
    )
    logger.info(
        "user_updated user_id=%s by=%s role=%s is_active=%s",
        user.id,
        principal.user_id,
        user.role,
        user.is_active,
    )
    return success_response(request=request, data=UserResponse.model_validate(user))
