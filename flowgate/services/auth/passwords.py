from __future__ import annotations

import bcrypt


_BCRYPT_ROUNDS = 10


def hash_password(password: str) -> str:
    """Hash a plaintext password using bcrypt."""

    salt = bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plaintext password against a stored hash."""

    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed stored hashes never authenticate.
        return False
