"""Fire-and-forget task helpers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, MutableSet

__all__ = ["spawn_task", "cancel_tasks"]

LOGGER = logging.getLogger(__name__)


def spawn_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
    registry: MutableSet[asyncio.Task[Any]] | None = None,
) -> asyncio.Task[Any]:
    """Schedule *coro* on the running loop and log it if it fails.

    When ``registry`` is given the task is held there until it finishes so it
    cannot be garbage collected mid-flight.
    """

    loop = asyncio.get_running_loop()
    task = loop.create_task(coro, name=name)
    if registry is not None:
        registry.add(task)
        task.add_done_callback(registry.discard)
    task.add_done_callback(_log_task_exception)
    return task


def cancel_tasks(tasks: MutableSet[asyncio.Task[Any]]) -> None:
    for task in list(tasks):
        if not task.done():
            task.cancel()
    tasks.clear()


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.error("Background task %s failed", task.get_name(), exc_info=exc)
