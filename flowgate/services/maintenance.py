from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Awaitable, Callable, Literal

from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.core.config import get_settings
from flowgate.persistence.db import SessionLocal
from flowgate.persistence.repos.rate_limits import delete_windows_started_before
from flowgate.persistence.repos.request_logs import delete_logs_created_before


logger = logging.getLogger(__name__)

MaintenanceTask = Literal["prune_rate_limits", "prune_request_logs"]


async def _delete_in_batches(
    session: AsyncSession,
    delete_batch: Callable[..., Awaitable[int]],
    *,
    cutoff: datetime,
    batch_size: int,
) -> int:
    # Commit after every batch so live traffic never waits behind one long delete.
    total = 0
    while True:
        deleted = await delete_batch(session, cutoff=cutoff, batch_size=batch_size)
        await session.commit()
        total += deleted
        if deleted < batch_size:
            return total


async def prune_rate_limits(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> int:
    # Drop windows that started before the retention horizon; they can no longer admit anything.
    settings = get_settings()
    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(hours=settings.rate_limit_retention_hours)
    return await _delete_in_batches(
        session,
        delete_windows_started_before,
        cutoff=cutoff,
        batch_size=batch_size or settings.cleanup_batch_size,
    )


async def prune_request_logs(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> int:
    # Remove request logs beyond the retention window.
    settings = get_settings()
    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(days=settings.request_log_retention_days)
    return await _delete_in_batches(
        session,
        delete_logs_created_before,
        cutoff=cutoff,
        batch_size=batch_size or settings.cleanup_batch_size,
    )


async def run_cleanup_sweep(*, now: datetime | None = None) -> dict[MaintenanceTask, int]:
    """Run both retention deletes; running it again with no new traffic deletes nothing."""
    async with SessionLocal() as session:
        rate_limits_deleted = await prune_rate_limits(session, now=now)
        request_logs_deleted = await prune_request_logs(session, now=now)
    logger.info(
        "cleanup_sweep_complete rate_limits_deleted=%s request_logs_deleted=%s",
        rate_limits_deleted,
        request_logs_deleted,
    )
    return {
        "prune_rate_limits": rate_limits_deleted,
        "prune_request_logs": request_logs_deleted,
    }
