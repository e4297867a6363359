"""
Fire-and-forget background tasks.

Callers never await these tasks and a failure never becomes the caller's
failure; exceptions are logged when the task finishes.
"""

import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected
_background_tasks: Set[asyncio.Task] = set()


def _on_done(task: asyncio.Task, description: str):
    _background_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning(f"Background task '{description}' failed: {error}")


def spawn_background(coro: Awaitable, description: str) -> asyncio.Task:
    """
    Schedule a coroutine without awaiting it.

    Args:
        coro: Coroutine to run
        description: Short label used when logging failures

    Returns:
        The scheduled task
    """
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(lambda t: _on_done(t, description))
    return task


async def drain_background_tasks(timeout: float = 5.0):
    """Wait briefly for pending background tasks (used at shutdown and in tests)."""
    pending = [t for t in _background_tasks if not t.done()]
    if not pending:
        return
    await asyncio.wait(pending, timeout=timeout)
