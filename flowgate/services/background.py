from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine


logger = logging.getLogger(__name__)

# Hold strong references so fire-and-forget tasks are not garbage collected mid-flight.
_pending: set[asyncio.Task[Any]] = set()


def spawn(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
    # Schedule work off the request path; the coroutine owns its own error handling.
    task = asyncio.get_running_loop().create_task(coro, name=name)
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task[Any]) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("background_task_failed name=%s", task.get_name(), exc_info=exc)


async def drain() -> None:
    # Await in-flight background work (shutdown hooks and tests).
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
