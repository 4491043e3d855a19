from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine


logger = logging.getLogger(__name__)

_tasks: set[asyncio.Task] = set()


def spawn(coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
    # Hold strong references so fire-and-forget tasks are not collected mid-flight.
    task = asyncio.create_task(coro, name=name)
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task) -> None:
    _tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("background_task_failed name=%s", task.get_name(), exc_info=exc)


async def drain() -> None:
    # Await outstanding tasks; used on shutdown and between tests.
    pending = [task for task in _tasks if not task.done()]
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
