from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.domain.models import ApiKey, User
from flowgate.services.auth.api_keys import generate_api_key


async def create_api_key(
    session: AsyncSession,
    *,
    user_id: int,
    name: str | None = None,
    expires_at: datetime | None = None,
) -> tuple[ApiKey, str]:
    # Return the raw key alongside the row; it is never retrievable again.
    raw_key, key_prefix, key_hash = generate_api_key()
    api_key = ApiKey(
        user_id=user_id,
        key_prefix=key_prefix,
        key_hash=key_hash,
        name=name,
        expires_at=expires_at,
    )
    session.add(api_key)
    await session.commit()
    await session.refresh(api_key)
    return api_key, raw_key


async def list_api_keys(
    session: AsyncSession,
    *,
    user_id: int | None = None,
    include_inactive: bool = True,
) -> list[tuple[ApiKey, User]]:
    stmt = select(ApiKey, User).join(User, ApiKey.user_id == User.id)
    if user_id is not None:
        stmt = stmt.where(ApiKey.user_id == user_id)
    if not include_inactive:
        stmt = stmt.where(ApiKey.is_active.is_(True))
    stmt = stmt.order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
    result = await session.execute(stmt)
    return [(api_key, user) for api_key, user in result.all()]


async def get_api_key(
    session: AsyncSession, *, key_id: int, user_id: int | None = None
) -> ApiKey | None:
    stmt = select(ApiKey).where(ApiKey.id == key_id)
    if user_id is not None:
        stmt = stmt.where(ApiKey.user_id == user_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def deactivate_api_key(session: AsyncSession, api_key: ApiKey) -> ApiKey:
    # Idempotent: deactivating an inactive key is a no-op.
    if api_key.is_active:
        api_key.is_active = False
        await session.commit()
        await session.refresh(api_key)
    return api_key
