from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.apps.api.deps import Principal, get_db, require_role
from flowgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from flowgate.apps.api.rate_limit import enforce_rate_limit
from flowgate.apps.api.response import SuccessEnvelope, success_response
from flowgate.core.config import get_settings
from flowgate.core.errors import NotFoundError, UnauthorizedError
from flowgate.domain.models import ROLE_USER
from flowgate.persistence.repos import users as users_repo
from flowgate.services.auth.passwords import hash_password, verify_password
from flowgate.services.auth.tokens import create_access_token


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(min_length=3, max_length=255, pattern=r"^[A-Za-z0-9_.-]+$")
    # bcrypt only accepts up to 72 bytes.
    password: str = Field(min_length=8, max_length=72)
    email: str | None = Field(default=None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

    @field_validator("password")
    @classmethod
    def _check_password_bytes(cls, value: str) -> str:
        if len(value.encode("utf-8")) > 72:
            raise ValueError("password must be at most 72 bytes")
        return value


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str | None
    role: str
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


@router.post(
    "/register",
    status_code=201,
    response_model=SuccessEnvelope[UserResponse],
    dependencies=[Depends(enforce_rate_limit)],
)
async def register(
    payload: RegisterRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Self-registration always yields a plain user; admins promote through /users.
    user = await users_repo.create_user(
        db,
        username=payload.username,
        email=payload.email,
        password_hash=hash_password(payload.password),
        role=ROLE_USER,
    )
    logger.info("user_registered user_id=%s", user.id)
    return success_response(request=request, data=UserResponse.model_validate(user))


@router.post(
    "/login",
    response_model=SuccessEnvelope[TokenResponse],
    dependencies=[Depends(enforce_rate_limit)],
)
async def login(
    payload: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await users_repo.get_user_by_username(db, payload.username)
    if user is None or not verify_password(payload.password, user.password_hash):
        raise UnauthorizedError("login_bad_credentials")
    if not user.is_active:
        raise UnauthorizedError("login_user_inactive")
    settings = get_settings()
    token = create_access_token(user_id=user.id, role=user.role, username=user.username)
    return success_response(
        request=request,
        data=TokenResponse(
            access_token=token,
            expires_in=settings.jwt_ttl_minutes * 60,
            user=UserResponse.model_validate(user),
        ),
    )


@router.get("/me", response_model=SuccessEnvelope[UserResponse])
async def me(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_USER)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await users_repo.get_user(db, principal.user_id)
    if user is None:
        raise NotFoundError("user")
    return success_response(request=request, data=UserResponse.model_validate(user))
