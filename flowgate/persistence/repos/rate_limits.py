from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Protocol, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.core.errors import DatabaseError
from flowgate.domain.models import RateLimitWindow
from flowgate.persistence.db import SessionLocal, dialect_name


@dataclass(frozen=True)
class WindowKey:
    # Identify one fixed window row for an identifier/endpoint pair.
    identifier: str
    endpoint: str
    window_start: datetime
    window_end: datetime


class AtomicWindowCounter(Protocol):
    # Capability used by the rate limiter: bump each window and return post-increment counts.
    async def increment(self, keys: Sequence[WindowKey]) -> list[int]: ...


def _insert_for(session: AsyncSession):
    dialect = dialect_name(session)
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise DatabaseError(f"rate limit upsert not supported for dialect {dialect}")


async def increment_window(session: AsyncSession, key: WindowKey) -> int:
    # Single-statement create-or-increment; concurrent callers serialize on the row, never lose updates.
    insert = _insert_for(session)
    stmt = insert(RateLimitWindow).values(
        identifier=key.identifier,
        endpoint=key.endpoint,
        window_start=key.window_start,
        window_end=key.window_end,
        request_count=1,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[
            RateLimitWindow.identifier,
            RateLimitWindow.endpoint,
            RateLimitWindow.window_start,
            RateLimitWindow.window_end,
        ],
        set_={
            "request_count": RateLimitWindow.request_count + 1,
            "updated_at": func.now(),
        },
    ).returning(RateLimitWindow.request_count)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def get_window(session: AsyncSession, key: WindowKey) -> RateLimitWindow | None:
    result = await session.execute(
        select(RateLimitWindow).where(
            RateLimitWindow.identifier == key.identifier,
            RateLimitWindow.endpoint == key.endpoint,
            RateLimitWindow.window_start == key.window_start,
            RateLimitWindow.window_end == key.window_end,
        )
    )
    return result.scalar_one_or_none()


async def delete_windows_started_before(
    session: AsyncSession, *, cutoff: datetime, batch_size: int
) -> int:
    # Delete one bounded batch of expired windows; callers loop until nothing is left.
    ids = (
        await session.execute(
            select(RateLimitWindow.id)
            .where(RateLimitWindow.window_start < cutoff)
            .order_by(RateLimitWindow.id)
            .limit(batch_size)
        )
    ).scalars().all()
    if not ids:
        return 0
    result = await session.execute(delete(RateLimitWindow).where(RateLimitWindow.id.in_(ids)))
    return int(result.rowcount or 0)


class SqlWindowCounter:
    """Store-backed counter; all windows of one check commit together."""

    def __init__(self, *, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def increment(self, keys: Sequence[WindowKey]) -> list[int]:
        # Keep a stable key order so concurrent transactions lock rows in the same sequence.
        async with self._session_factory() as session:
            async with session.begin():
                return [await increment_window(session, key) for key in keys]
