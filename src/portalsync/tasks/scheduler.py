"""
Scheduler loop.

Polls the task store on a fixed interval and dispatches every due task
whose type is not already running. Dispatched runs are detached; the
loop never waits for them and never fails because of them.

Lifecycle::

    INIT (recovery sweep) -> RUNNING (poll every interval) -> STOPPED
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from portalsync.core.exceptions import MutexViolationError
from portalsync.tasks.background import DetachedTaskSet
from portalsync.tasks.executor import TaskExecutor
from portalsync.tasks.models import TaskDefinition
from portalsync.tasks.store import TaskStore
from portalsync.tasks.tracker import RunningTaskRegistry

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    """Scheduler loop lifecycle states."""

    INIT = "init"
    RUNNING = "running"
    STOPPED = "stopped"


class SchedulerLoop:
    """
    Periodic poller that turns due task definitions into detached runs.

    Args:
        store: Task store to poll
        executor: Executor that runs each task
        registry: Running registry used to skip task types in flight
        check_interval_seconds: Delay between polls
        startup_delay_seconds: Delay before the first poll
        detached: Set that tracks dispatched runs
        clock: Source of "now"
    """

    def __init__(
        self,
        store: TaskStore,
        executor: TaskExecutor,
        registry: RunningTaskRegistry,
        check_interval_seconds: float,
        startup_delay_seconds: float = 0.0,
        detached: Optional[DetachedTaskSet] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._executor = executor
        self._registry = registry
        self._interval = check_interval_seconds
        self._startup_delay = startup_delay_seconds
        self._detached = detached or DetachedTaskSet()
        self._clock = clock

        self._state = LoopState.INIT
        self._loop_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> LoopState:
        """Current lifecycle state."""
        return self._state

    @property
    def is_running(self) -> bool:
        """Whether the poll loop is active."""
        return self._state == LoopState.RUNNING

    @property
    def check_interval_seconds(self) -> float:
        """Seconds between polls."""
        return self._interval

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def recover(self) -> tuple[int, int]:
        """Run the crash recovery sweep and log what it changed."""
        tasks_reset, runs_cancelled = await self._store.recover_interrupted_runs(self._clock())
        if tasks_reset or runs_cancelled:
            logger.warning(
                f"Recovered from interrupted runs: {tasks_reset} task(s) marked failed, "
                f"{runs_cancelled} run(s) cancelled"
            )
        return tasks_reset, runs_cancelled

    async def start(self) -> None:
        """Recover interrupted runs and start polling."""
        if self._state == LoopState.RUNNING:
            logger.warning("Scheduler already running")
            return

        await self.recover()
        self._state = LoopState.RUNNING
        self._loop_task = asyncio.create_task(self._poll_loop(), name="scheduler-loop")
        logger.info(f"Scheduler started (checking every {self._interval}s)")

    async def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop polling.

        Args:
            wait: Also wait for dispatched runs to finish
            timeout: Maximum seconds to wait for dispatched runs
        """
        self._state = LoopState.STOPPED

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if wait:
            await self._detached.wait(timeout=timeout)
        logger.info("Scheduler stopped")

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def check_and_run_tasks(self) -> list[str]:
        """
        Run one poll step.

        Returns:
            Task types dispatched in this step
        """
        due = await self._store.get_due_tasks(self._clock())
        dispatched: list[str] = []
        for task in due:
            if self._registry.is_running(task.task_type):
                logger.info(f"Task {task.task_type} is already running, skipping")
                continue
            self._detached.spawn(self._run_detached(task), name=f"task:{task.task_type}")
            dispatched.append(task.task_type)
        return dispatched

    async def _run_detached(self, task: TaskDefinition) -> None:
        try:
            await self._executor.run_task(task)
        except MutexViolationError:
            logger.info(f"Task {task.task_type} started elsewhere, skipping")
        except Exception as e:
            logger.error(f"Scheduled run of {task.task_type} failed: {e}")

    async def _poll_loop(self) -> None:
        """Background loop: first poll after the startup delay, then every interval."""
        delay = self._startup_delay
        while self._state == LoopState.RUNNING:
            try:
                await asyncio.sleep(delay)
                if self._state != LoopState.RUNNING:
                    break
                await self.check_and_run_tasks()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Scheduler poll failed: {e}")
            delay = self._interval
