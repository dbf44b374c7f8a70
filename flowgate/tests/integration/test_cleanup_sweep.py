from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from flowgate.domain.models import RateLimitWindow, RequestLog
from flowgate.persistence.db import SessionLocal
from flowgate.services.maintenance import prune_rate_limits, prune_request_logs, run_cleanup_sweep
from flowgate.workers import cleanup_worker


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _seed() -> None:
    async with SessionLocal() as session:
        for offset_minutes in (-600, -180, -121, -60, -1):
            start = NOW + timedelta(minutes=offset_minutes)
            session.add(
                RateLimitWindow(
                    identifier="ip:203.0.113.5",
                    endpoint="/v1/todos",
                    request_count=3,
                    window_start=start,
                    window_end=start + timedelta(minutes=1),
                )
            )
        for offset_days in (-90, -31, -29, 0):
            session.add(
                RequestLog(
                    endpoint="/v1/todos",
                    method="GET",
                    status_code=200,
                    response_time=5,
                    created_at=NOW + timedelta(days=offset_days),
                )
            )
        await session.commit()


async def _counts() -> tuple[int, int]:
    async with SessionLocal() as session:
        windows = (await session.execute(select(func.count(RateLimitWindow.id)))).scalar_one()
        logs = (await session.execute(select(func.count(RequestLog.id)))).scalar_one()
    return windows, logs


async def test_sweep_deletes_only_expired_rows_and_is_idempotent() -> None:
    await _seed()

    first = await run_cleanup_sweep(now=NOW)
    assert first == {"prune_rate_limits": 3, "prune_request_logs": 2}
    assert await _counts() == (2, 2)

    second = await run_cleanup_sweep(now=NOW)
    assert second == {"prune_rate_limits": 0, "prune_request_logs": 0}
    assert await _counts() == (2, 2)


async def test_prunes_run_in_bounded_batches() -> None:
    await _seed()
    async with SessionLocal() as session:
        assert await prune_rate_limits(session, now=NOW, batch_size=1) == 3
        assert await prune_request_logs(session, now=NOW, batch_size=1) == 2
    assert await _counts() == (2, 2)


async def test_retention_follows_settings(monkeypatch) -> None:
    from flowgate.core.config import get_settings

    await _seed()
    monkeypatch.setenv("RATE_LIMIT_RETENTION_HOURS", "12")
    monkeypatch.setenv("REQUEST_LOG_RETENTION_DAYS", "100")
    get_settings.cache_clear()
    assert await run_cleanup_sweep(now=NOW) == {"prune_rate_limits": 0, "prune_request_logs": 0}


async def test_worker_cron_runs_sweep() -> None:
    await _seed()
    cron_job = cleanup_worker.WorkerSettings.cron_jobs[0]
    assert cron_job.coroutine is cleanup_worker.cleanup_sweep
    assert cron_job.minute == set(range(0, 60, 5))
    counts = await cleanup_worker.cleanup_sweep({})
    # Real clock: everything seeded around NOW is long past retention.
    assert counts["prune_rate_limits"] == 5
    assert counts["prune_request_logs"] == 4


def test_sweep_minutes_cover_the_hour() -> None:
    assert cleanup_worker._sweep_minutes(15) == {0, 15, 30, 45}
    assert cleanup_worker._sweep_minutes(0) == set(range(60))
    assert cleanup_worker._sweep_minutes(90) == {0}
