from __future__ import annotations

import hashlib
import secrets

from flowgate.core.config import get_settings
from flowgate.domain.models import ROLE_ADMIN, ROLE_USER


ROLE_ORDER: dict[str, int] = {
    ROLE_USER: 1,
    ROLE_ADMIN: 2,
}


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def is_api_key(credential: str) -> bool:
    # API keys carry the configured prefix; anything else is treated as a signed token.
    return credential.startswith(f"{get_settings().api_key_prefix}_")


def generate_api_key() -> tuple[str, str, str]:
    # Return (raw_key, key_prefix, key_hash); only the hash is persisted.
    prefix = get_settings().api_key_prefix
    raw_key = f"{prefix}_{secrets.token_urlsafe(32)}"
    key_prefix = raw_key[:12]
    return raw_key, key_prefix, hash_api_key(raw_key)
