from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from flowgate.core.config import get_settings
from flowgate.core.logging import configure_logging
from flowgate.persistence.db import engine
from flowgate.services.maintenance import run_cleanup_sweep


logger = logging.getLogger(__name__)


def _sweep_minutes(interval_minutes: int) -> set[int]:
    # arq cron matches on minute values; spread the sweep evenly across the hour.
    step = max(1, min(60, int(interval_minutes)))
    return set(range(0, 60, step))


async def cleanup_sweep(ctx) -> dict[str, int]:
    # Retention deletes are idempotent, so overlapping or repeated runs are harmless.
    counts = await run_cleanup_sweep()
    return dict(counts)


async def _startup(ctx) -> None:
    configure_logging()
    # Sweep once at boot so a long-stopped worker catches up immediately.
    ctx["startup_counts"] = await run_cleanup_sweep()


async def _shutdown(ctx) -> None:
    await engine.dispose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.cleanup_queue_name
    functions = [cleanup_sweep]
    cron_jobs = [
        cron(
            cleanup_sweep,
            minute=_sweep_minutes(settings.cleanup_interval_minutes),
            run_at_startup=False,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
