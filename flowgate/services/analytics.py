from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import Float, case, cast, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowgate.domain.models import RequestLog, Todo, User


USAGE_WINDOW = timedelta(hours=24)
RECENT_ERRORS_LIMIT = 100


def _since(now: datetime | None) -> datetime:
    return (now or datetime.now(timezone.utc)) - USAGE_WINDOW


async def api_usage_stats(session: AsyncSession, *, now: datetime | None = None) -> list[dict[str, Any]]:
    """Per endpoint and method request statistics over the last 24 hours."""
    success = case((RequestLog.status_code.between(200, 299), 1))
    errors = case((RequestLog.status_code >= 400, 1))
    total = func.count(RequestLog.id)
    stmt = (
        select(
            RequestLog.endpoint,
            RequestLog.method,
            total.label("total_requests"),
            func.count(distinct(RequestLog.user_id)).label("unique_users"),
            func.avg(cast(RequestLog.response_time, Float)).label("avg_response_time_ms"),
            func.max(RequestLog.response_time).label("max_response_time_ms"),
            func.min(RequestLog.response_time).label("min_response_time_ms"),
            func.count(success).label("success_count"),
            func.count(errors).label("error_count"),
        )
        .where(RequestLog.created_at > _since(now))
        .group_by(RequestLog.endpoint, RequestLog.method)
        .order_by(total.desc(), RequestLog.endpoint, RequestLog.method)
    )
    rows = (await session.execute(stmt)).mappings().all()
    stats: list[dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        avg = item["avg_response_time_ms"]
        item["avg_response_time_ms"] = round(float(avg), 2) if avg is not None else None
        requests = item["total_requests"] or 0
        item["success_rate_percent"] = (
            round(item["success_count"] / requests * 100, 2) if requests else None
        )
        stats.append(item)
    return stats


async def recent_errors(session: AsyncSession, *, now: datetime | None = None) -> list[RequestLog]:
    """The latest failed requests (status >= 400) from the last 24 hours."""
    stmt = (
        select(RequestLog)
        .where(RequestLog.status_code >= 400, RequestLog.created_at > _since(now))
        .order_by(RequestLog.created_at.desc(), RequestLog.id.desc())
        .limit(RECENT_ERRORS_LIMIT)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def user_activity(session: AsyncSession) -> list[dict[str, Any]]:
    # Aggregate requests and todos in separate subqueries so neither count multiplies the other.
    requests = (
        select(
            RequestLog.user_id.label("user_id"),
            func.count(RequestLog.id).label("total_requests"),
            func.count(distinct(func.date(RequestLog.created_at))).label("active_days"),
            func.max(RequestLog.created_at).label("last_activity"),
        )
        .where(RequestLog.user_id.is_not(None))
        .group_by(RequestLog.user_id)
        .subquery()
    )
    todos = (
        select(
            Todo.user_id.label("user_id"),
            func.count(Todo.id).label("total_todos"),
            func.count(case((Todo.completed.is_(True), 1))).label("completed_todos"),
        )
        .group_by(Todo.user_id)
        .subquery()
    )
    total_requests = func.coalesce(requests.c.total_requests, 0)
    stmt = (
        select(
            User.id.label("user_id"),
            User.username,
            User.role,
            total_requests.label("total_requests"),
            func.coalesce(requests.c.active_days, 0).label("active_days"),
            requests.c.last_activity,
            func.coalesce(todos.c.total_todos, 0).label("total_todos"),
            func.coalesce(todos.c.completed_todos, 0).label("completed_todos"),
        )
        .outerjoin(requests, requests.c.user_id == User.id)
        .outerjoin(todos, todos.c.user_id == User.id)
        .order_by(total_requests.desc(), User.id)
    )
    rows = (await session.execute(stmt)).mappings().all()
    return [dict(row) for row in rows]
