"""
Task executor.

Runs one task to completion with the full lifecycle: mutex acquisition,
run state and history writes, typed dispatch to the adapter, success or
capped-retry failure recording, failure alerting, and mutex release.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol

from portalsync.core.exceptions import MutexViolationError, TaskExecutionError
from portalsync.tasks.background import DetachedTaskSet
from portalsync.tasks.configs import parse_task_config
from portalsync.tasks.dispatch import AdapterRegistry
from portalsync.tasks.models import TaskDefinition
from portalsync.tasks.store import TaskStore
from portalsync.tasks.tracker import RunningTaskRegistry

logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    """What the executor needs from the alerting collaborator."""

    enabled: bool

    def send_sync_error_alert(
        self,
        task_name: str,
        error_message: str,
        duration_seconds: Optional[int] = None,
    ) -> Awaitable[None]: ...


def _elapsed_seconds(started_at: datetime, finished_at: datetime) -> int:
    return max(0, round((finished_at - started_at).total_seconds()))


def _error_text(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


class TaskExecutor:
    """
    Executes task definitions through their adapters.

    The running registry entry for a task type is created before any
    store write and removed in a ``finally`` block, so a type is never
    left locked after a run ends in any way.
    """

    def __init__(
        self,
        store: TaskStore,
        registry: RunningTaskRegistry,
        adapters: AdapterRegistry,
        alerts: Optional[AlertSink] = None,
        detached: Optional[DetachedTaskSet] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._registry = registry
        self._adapters = adapters
        self._alerts = alerts
        self._detached = detached or DetachedTaskSet()
        self._clock = clock

    @property
    def registry(self) -> RunningTaskRegistry:
        """The running task registry."""
        return self._registry

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def run_task(self, task: TaskDefinition) -> dict[str, Any]:
        """
        Execute a task definition once.

        Args:
            task: Definition loaded from the store

        Returns:
            The adapter's result mapping

        Raises:
            MutexViolationError: If the task type is already running
            TaskExecutionError: If the run failed; the failure is
                recorded before this is raised
        """
        task_type = task.task_type
        if self._registry.is_running(task_type):
            raise MutexViolationError(task_type)

        started_at = self._clock()
        self._registry.register(task_type, started_at)
        try:
            return await self._run_scheduled(task, started_at)
        finally:
            self._registry.unregister(task_type)

    async def run_unscheduled(
        self,
        task_type: str,
        config: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Execute a task type that has no catalog row.

        Run history is still written and the mutex still applies; only the
        definition's run statistics and next run time are skipped.
        """
        if self._registry.is_running(task_type):
            raise MutexViolationError(task_type)

        started_at = self._clock()
        self._registry.register(task_type, started_at)
        try:
            history_id: Optional[int] = None
            try:
                history_id = await self._store.create_history(task_type, started_at)
                result = await self._dispatch(task_type, config)
                finished_at = self._clock()
                await self._store.complete_history(
                    history_id,
                    finished_at,
                    _elapsed_seconds(started_at, finished_at),
                    int(result.get("records_processed", 0)),
                    result,
                )
                return result
            except Exception as e:
                duration = _elapsed_seconds(started_at, self._clock())
                error_message = _error_text(e)
                logger.error(f"Unscheduled task {task_type} failed after {duration}s: {error_message}")
                if history_id is not None:
                    await self._store.fail_history(history_id, self._clock(), duration, error_message)
                self._alert(task_type, error_message, duration)
                raise TaskExecutionError(task_type, error_message, duration) from e
        finally:
            self._registry.unregister(task_type)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _run_scheduled(self, task: TaskDefinition, started_at: datetime) -> dict[str, Any]:
        task_type = task.task_type
        history_id: Optional[int] = None
        logger.info(f"Starting task {task_type}")

        try:
            await self._store.mark_running(task_type, started_at)
            history_id = await self._store.create_history(task_type, started_at, task.id)

            result = await self._dispatch(task_type, task.config)

            finished_at = self._clock()
            duration = _elapsed_seconds(started_at, finished_at)
            records = int(result.get("records_processed", 0))
            await self._store.mark_success(
                task_type,
                duration,
                task.next_run_after(finished_at),
                finished_at,
            )
            await self._store.complete_history(history_id, finished_at, duration, records, result)
            logger.info(f"Task {task_type} completed in {duration}s ({records} records)")
            return result

        except Exception as e:
            finished_at = self._clock()
            duration = _elapsed_seconds(started_at, finished_at)
            error_message = _error_text(e)
            logger.error(f"Task {task_type} failed after {duration}s: {error_message}")

            try:
                await self._store.mark_failed(
                    task_type,
                    error_message,
                    duration,
                    task.retry_after(finished_at),
                    finished_at,
                )
            except Exception as store_error:
                logger.error(f"Could not record failure of {task_type}: {store_error}")
            finally:
                if history_id is not None:
                    await self._store.fail_history(history_id, finished_at, duration, error_message)

            self._alert(task.task_name, error_message, duration)
            raise TaskExecutionError(task_type, error_message, duration) from e

    async def _dispatch(self, task_type: str, raw_config: Optional[dict[str, Any]]) -> dict[str, Any]:
        kind, adapter = self._adapters.resolve(task_type)
        config = parse_task_config(kind, raw_config)
        result = await adapter(config, self._registry.progress_callback(task_type))
        return dict(result or {})

    def _alert(self, task_name: str, error_message: str, duration: int) -> None:
        if self._alerts is None or not self._alerts.enabled:
            return
        self._detached.spawn(
            self._alerts.send_sync_error_alert(task_name, error_message, duration),
            name=f"alert:{task_name}",
        )
