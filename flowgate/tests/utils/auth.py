from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from flowgate.domain.models import ApiKey, User
from flowgate.persistence.db import SessionLocal
from flowgate.services.auth.api_keys import generate_api_key, normalize_role
from flowgate.services.auth.passwords import hash_password
from flowgate.services.auth.tokens import create_access_token


TEST_PASSWORD = "correct-horse-battery"


async def create_test_user(
    *,
    role: str = "user",
    username: str | None = None,
    is_active: bool = True,
    password: str = TEST_PASSWORD,
) -> User:
    # Provision a user row directly so tests do not depend on the register route.
    user = User(
        username=username or f"user-{uuid4().hex[:10]}",
        email=None,
        password_hash=hash_password(password),
        role=normalize_role(role),
        is_active=is_active,
    )
    async with SessionLocal() as session:
        session.add(user)
        await session.commit()
        await session.refresh(user)
    return user


def token_headers(user: User) -> dict[str, str]:
    token = create_access_token(user_id=user.id, role=user.role, username=user.username)
    return {"Authorization": f"Bearer {token}"}


async def create_test_api_key(
    *,
    user: User,
    name: str = "test-key",
    is_active: bool = True,
    expires_at: datetime | None = None,
) -> tuple[str, dict[str, str], int]:
    # Returns (raw_key, headers, key_id).
    raw_key, key_prefix, key_hash = generate_api_key()
    api_key = ApiKey(
        user_id=user.id,
        key_prefix=key_prefix,
        key_hash=key_hash,
        name=name,
        is_active=is_active,
        expires_at=expires_at,
    )
    async with SessionLocal() as session:
        session.add(api_key)
        await session.commit()
        await session.refresh(api_key)
    return raw_key, {"Authorization": f"Bearer {raw_key}"}, api_key.id
