from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.apps.api.rate_limit import enforce_rate_limit
from flowgate.core.config import get_settings
from flowgate.core.errors import ForbiddenError, UnauthorizedError
from flowgate.persistence.db import get_session
from flowgate.services.auth.api_keys import role_allows
from flowgate.services.auth.identity import Principal, authenticate


__all__ = ["Principal", "get_db", "get_current_principal", "require_role"]


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise UnauthorizedError("credential_missing")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthorizedError("credential_malformed")
    return parts[1]


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # Failures surface as UnauthorizedError; the handler sends one uniform 401.
    header_value = request.headers.get(get_settings().auth_api_key_header)
    credential = _parse_bearer_token(header_value)
    principal = await authenticate(db, credential)
    # Expose the identity to the request log middleware.
    request.state.principal = principal
    return principal


def require_role(minimum_role: str):
    # Dependency factory: rate limit first, then authenticate, then check the role.
    async def _dependency(
        _rate_limit: None = Depends(enforce_rate_limit),
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            raise ForbiddenError("Insufficient role for this operation")
        return principal

    return _dependency
