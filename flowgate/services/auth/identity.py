from __future__ import annotations

from datetime import datetime, timezone
import logging

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.core.errors import DatabaseError, UnauthorizedError
from flowgate.domain.models import ApiKey, User
from flowgate.persistence.db import SessionLocal
from flowgate.services import background
from flowgate.services.auth.api_keys import hash_api_key, is_api_key, normalize_role
from flowgate.services.auth.tokens import decode_access_token


logger = logging.getLogger(__name__)

AUTH_METHOD_TOKEN = "token"
AUTH_METHOD_API_KEY = "api_key"


class Principal(BaseModel):
    # Authenticated identity carried through the request for RBAC and audit rows.
    user_id: int
    role: str
    username: str | None = None
    auth_method: str = AUTH_METHOD_TOKEN
    api_key_id: int | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; treat them as UTC like everything we write.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def authenticate(
    session: AsyncSession,
    credential: str,
    *,
    now: datetime | None = None,
) -> Principal:
    """Resolve a bearer credential (signed token or API key) into a principal.

    Every rejection raises ``UnauthorizedError``; its ``reason`` is for the audit row only.
    """
    if is_api_key(credential):
        return await _authenticate_api_key(session, credential, now=now or _utc_now())

    claims = decode_access_token(credential)
    try:
        role = normalize_role(str(claims.get("role", "")))
    except ValueError as exc:
        raise UnauthorizedError("token_invalid_role") from exc
    return Principal(
        user_id=int(claims["sub"]),
        role=role,
        username=claims.get("username"),
        auth_method=AUTH_METHOD_TOKEN,
    )


async def _authenticate_api_key(session: AsyncSession, raw_key: str, *, now: datetime) -> Principal:
    key_hash = hash_api_key(raw_key)
    try:
        result = await session.execute(
            select(ApiKey, User)
            .join(User, ApiKey.user_id == User.id)
            .where(ApiKey.key_hash == key_hash)
        )
    except SQLAlchemyError as exc:
        raise DatabaseError("api key lookup failed") from exc

    row = result.first()
    if row is None:
        raise UnauthorizedError("api_key_unknown")
    api_key, user = row
    if not api_key.is_active:
        raise UnauthorizedError("api_key_inactive")
    if api_key.expires_at is not None and _as_utc(api_key.expires_at) <= now:
        raise UnauthorizedError("api_key_expired")
    if not user.is_active:
        raise UnauthorizedError("user_inactive")
    try:
        role = normalize_role(user.role)
    except ValueError as exc:
        raise UnauthorizedError("user_invalid_role") from exc

    background.spawn(touch_last_used(api_key.id), name=f"api_key_touch:{api_key.id}")
    return Principal(
        user_id=user.id,
        role=role,
        username=user.username,
        auth_method=AUTH_METHOD_API_KEY,
        api_key_id=api_key.id,
    )


async def touch_last_used(api_key_id: int) -> None:
    # Update last_used_at in its own session without affecting request transactions.
    async with SessionLocal() as session:
        try:
            await session.execute(
                update(ApiKey)
                .where(ApiKey.id == api_key_id)
                .values(last_used_at=func.now())
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.warning("api_key_touch_failed api_key_id=%s", api_key_id, exc_info=True)
