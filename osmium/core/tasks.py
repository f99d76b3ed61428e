"""
Background Task Registry

Fire-and-forget work (response caching, after-response invalidation) is
spawned here so the event loop keeps a strong reference to every task and
failures are logged instead of disappearing with the task object.
"""

import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)

_pending: Set[asyncio.Task] = set()


def spawn(coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
    """Schedule a coroutine on the running loop without awaiting it."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(
            f"Background task {task.get_name()} failed: {error}",
            exc_info=error,
        )


def pending_count() -> int:
    """Number of background tasks that have not finished yet."""
    return len(_pending)


async def drain(timeout: Optional[float] = None) -> int:
    """
    Wait for pending background tasks.

    Tasks spawned while draining are awaited as well. Tasks still running when
    the timeout expires are left alone.

    Returns:
        Number of tasks awaited
    """
    awaited = 0
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout

    while _pending:
        current = [
            task
            for task in _pending
            if not task.done() and task is not asyncio.current_task()
        ]
        if not current:
            break

        remaining = None if deadline is None else max(0.0, deadline - loop.time())
        done, not_done = await asyncio.wait(current, timeout=remaining)
        awaited += len(done)

        if not_done:
            logger.warning(
                f"{len(not_done)} background tasks still running after drain timeout"
            )
            break

    return awaited
