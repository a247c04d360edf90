"""
Tracking for fire-and-forget coroutines.

Dispatched task runs and failure alerts are not awaited by whoever starts
them. They are kept here so their failures are logged instead of lost
and so shutdown can wait for them.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


class DetachedTaskSet:
    """A set of background asyncio tasks with logged outcomes."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """
        Start a coroutine without awaiting it.

        Args:
            coro: Coroutine to run
            name: Task name used in log messages

        Returns:
            The created asyncio task
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"Background task {task.get_name()} cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}")

    async def wait(self, timeout: Optional[float] = None) -> None:
        """Wait for all in-flight tasks to finish."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info(f"Waiting for {len(pending)} background task(s)")
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning(f"{len(still_running)} background task(s) still running after {timeout}s")

    async def cancel_all(self) -> None:
        """Cancel every in-flight task and wait for them to unwind."""
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
