from __future__ import annotations

import asyncio
from datetime import timedelta

from sqlalchemy import func, select

from flowgate.apps.api.rate_limit import RateLimiter, WindowConfig, window_bounds
from flowgate.domain.models import RateLimitWindow
from flowgate.persistence.db import SessionLocal
from flowgate.persistence.repos.rate_limits import SqlWindowCounter, WindowKey, get_window, increment_window
from flowgate.tests.utils.clock import WINDOW_ALIGNED_START


def _key(identifier: str = "ip:203.0.113.5", endpoint: str = "/v1/todos") -> WindowKey:
    start, end = window_bounds(WINDOW_ALIGNED_START, 60)
    return WindowKey(identifier=identifier, endpoint=endpoint, window_start=start, window_end=end)


async def test_upsert_creates_then_increments_one_row() -> None:
    key = _key()
    async with SessionLocal() as session:
        async with session.begin():
            counts = [await increment_window(session, key) for _ in range(3)]
    assert counts == [1, 2, 3]

    async with SessionLocal() as session:
        row = await get_window(session, key)
        total_rows = (await session.execute(select(func.count(RateLimitWindow.id)))).scalar_one()
    assert row is not None
    assert row.request_count == 3
    assert total_rows == 1


async def test_sql_counter_returns_post_increment_counts_per_window() -> None:
    short = _key()
    start, end = window_bounds(WINDOW_ALIGNED_START, 3600)
    long = WindowKey(identifier=short.identifier, endpoint=short.endpoint, window_start=start, window_end=end)
    counter = SqlWindowCounter()
    assert await counter.increment([short, long]) == [1, 1]
    assert await counter.increment([short, long]) == [2, 2]


async def test_concurrent_checks_never_lose_increments() -> None:
    limit = 10
    attempts = 25
    limiter = RateLimiter(windows=(WindowConfig("short", limit, 60),))
    now = WINDOW_ALIGNED_START + timedelta(seconds=1)

    decisions = await asyncio.gather(
        *(limiter.check_and_increment("ip:198.51.100.7", "/v1/todos", now) for _ in range(attempts))
    )

    rejected = [decision for decision in decisions if not decision.allowed]
    assert len(rejected) == max(0, attempts - limit)
    assert sorted(decision.windows[0].count for decision in decisions) == list(range(1, attempts + 1))
    async with SessionLocal() as session:
        row = await get_window(session, _key("ip:198.51.100.7"))
    assert row is not None
    assert row.request_count == attempts


async def test_each_window_gets_its_own_row() -> None:
    limiter = RateLimiter(windows=(WindowConfig("short", 60, 60),))
    await limiter.check_and_increment("ip:1", "/v1/todos", WINDOW_ALIGNED_START)
    await limiter.check_and_increment("ip:1", "/v1/todos", WINDOW_ALIGNED_START + timedelta(seconds=61))
    async with SessionLocal() as session:
        rows = (
            await session.execute(select(RateLimitWindow).order_by(RateLimitWindow.window_start))
        ).scalars().all()
    assert [row.request_count for row in rows] == [1, 1]
    assert rows[0].window_end == rows[1].window_start
