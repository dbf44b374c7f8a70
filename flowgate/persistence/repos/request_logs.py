from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.domain.models import RequestLog


async def delete_logs_created_before(
    session: AsyncSession, *, cutoff: datetime, batch_size: int
) -> int:
    # Delete one bounded batch of old rows; callers loop until nothing is left.
    ids = (
        await session.execute(
            select(RequestLog.id)
            .where(RequestLog.created_at < cutoff)
            .order_by(RequestLog.id)
            .limit(batch_size)
        )
    ).scalars().all()
    if not ids:
        return 0
    result = await session.execute(delete(RequestLog).where(RequestLog.id.in_(ids)))
    return int(result.rowcount or 0)
