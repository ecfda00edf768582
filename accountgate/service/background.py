from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Set

from accountgate.logging import get_logger

logger = get_logger(__name__)


class TaskTracker:
    """Run side work (audit writes, notification emails) without blocking the caller.

    Exceptions raised by a task are logged and dropped. References are kept until
    each task finishes so the event loop cannot garbage-collect them mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any], *, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "background_task_failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self) -> None:
        """Wait for outstanding tasks; used at shutdown and in tests."""
        while self._tasks:
            pending = list(self._tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.difference_update(pending)

    def __len__(self) -> int:
        return len(self._tasks)
