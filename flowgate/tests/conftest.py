from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway database before any flowgate module builds the engine.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="flowgate-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/flowgate.db"
)
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-with-enough-length-for-hs256")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from flowgate.apps.api import rate_limit  # noqa: E402
from flowgate.core.config import get_settings  # noqa: E402
from flowgate.domain.models import Base  # noqa: E402
from flowgate.persistence.db import engine  # noqa: E402
from flowgate.services import background  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_database() -> None:
    # Rebuild the schema per test so every test starts from empty tables.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Let fire-and-forget writes finish before the loop and pool go away.
    await background.drain()
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Clear settings cache between tests to avoid leaking env overrides.
    yield
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
