"""Stateless bearer tokens: HS256 JWTs verified by signature and expiry only."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from flowgate.core.config import get_settings
from flowgate.core.errors import UnauthorizedError


def create_access_token(
    *,
    user_id: int,
    role: str,
    username: str,
    expires_delta: timedelta | None = None,
    now: datetime | None = None,
) -> str:
    """Create a signed token carrying the identity claims."""

    settings = get_settings()
    issued_at = now or datetime.now(timezone.utc)
    expires_at = issued_at + (
        expires_delta if expires_delta is not None else timedelta(minutes=settings.jwt_ttl_minutes)
    )
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "role": role,
        "username": username,
        "iss": settings.jwt_issuer,
        "iat": issued_at,
        "exp": expires_at,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict[str, Any]:
    """Verify signature, expiry and issuer; no store lookup."""

    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise UnauthorizedError("token_expired") from exc
    except jwt.InvalidTokenError as exc:
        raise UnauthorizedError("token_invalid") from exc
    if not str(claims.get("sub", "")).isdigit():
        raise UnauthorizedError("token_invalid_subject")
    return claims


def token_subject(token: str) -> str | None:
    """Return the verified subject, or None when the token does not verify."""

    try:
        return str(decode_access_token(token)["sub"])
    except UnauthorizedError:
        return None
