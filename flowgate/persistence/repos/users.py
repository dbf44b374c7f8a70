from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.core.errors import ConflictError
from flowgate.domain.models import User


async def get_user(session: AsyncSession, user_id: int) -> User | None:
    return await session.get(User, user_id)


async def get_user_by_username(session: AsyncSession, username: str) -> User | None:
    result = await session.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def list_users(
    session: AsyncSession,
    *,
    is_active: bool | None = None,
    role: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[User]:
    stmt = select(User)
    if is_active is not None:
        stmt = stmt.where(User.is_active.is_(is_active))
    if role:
        stmt = stmt.where(User.role == role)
    stmt = stmt.order_by(User.id).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_user(
    session: AsyncSession,
    *,
    username: str,
    password_hash: str,
    email: str | None = None,
    role: str = "user",
) -> User:
    user = User(username=username, email=email, password_hash=password_hash, role=role)
    session.add(user)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("username or email already exists") from exc
    await session.refresh(user)
    return user


async def update_user(
    session: AsyncSession,
    user: User,
    *,
    role: str | None = None,
    is_active: bool | None = None,
    email: str | None = None,
) -> User:
    # Users are never deleted; deactivation is the only way to retire an account.
    if role is not None:
        user.role = role
    if is_active is not None:
        user.is_active = is_active
    if email is not None:
        user.email = email
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("email already exists") from exc
    await session.refresh(user)
    return user
