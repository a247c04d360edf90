"""
Scheduler service.

Owns and wires every engine component for one process: the database,
task store, running registry, executor, scheduler loop, alerting and
the adapter registry. This is the surface the CLI and any embedding
application talk to.
"""

import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Union

from portalsync.alerts import AlertNotifier
from portalsync.core.config import PortalSyncConfig
from portalsync.core.constants import DEFAULT_TASKS_FILE
from portalsync.core.database import Database
from portalsync.core.exceptions import MutexViolationError
from portalsync.orchestration.daily_chain import build_daily_sync_chain
from portalsync.sync.crm import CrmClient
from portalsync.sync.lms import LmsClient
from portalsync.sync.records import SyncRecordStore
from portalsync.sync.registry import build_default_registry
from portalsync.tasks.background import DetachedTaskSet
from portalsync.tasks.configs import DailyChainConfig, config_to_dict, parse_task_config
from portalsync.tasks.constants import DEFAULT_HISTORY_LIMIT, TaskKind
from portalsync.tasks.dispatch import AdapterRegistry
from portalsync.tasks.executor import TaskExecutor
from portalsync.tasks.models import TaskDefinition, TaskRunHistory
from portalsync.tasks.scheduler import SchedulerLoop
from portalsync.tasks.store import TaskStore
from portalsync.tasks.tracker import ProgressCallback, RunningTaskRegistry

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Process-level facade over the scheduling engine.

    Args:
        config: Engine configuration (the enable gate is
            ``config.scheduler.enabled``)
        adapters: Adapter registry; built from the LMS and CRM clients
            when omitted
        db: Database; opened from ``config.database.path`` when omitted
        alerts: Alert notifier; built from ``config.alerts`` when omitted
        clock: Source of "now" shared by every component
    """

    def __init__(
        self,
        config: Optional[PortalSyncConfig] = None,
        adapters: Optional[AdapterRegistry] = None,
        db: Optional[Database] = None,
        alerts: Optional[AlertNotifier] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.config = config or PortalSyncConfig()
        self._clock = clock

        self.db = db or Database(self.config.database.path)
        self.store = TaskStore(self.db)
        self.records = SyncRecordStore(self.db, clock=clock)

        self._lms: Optional[LmsClient] = None
        self._crm: Optional[CrmClient] = None
        if adapters is None:
            self._lms = LmsClient(self.config.lms)
            self._crm = CrmClient(self.config.crm)
            adapters = build_default_registry(self._lms, self._crm, self.records, self.store, clock)
        if TaskKind.DAILY_SYNC_CHAIN not in adapters:
            adapters.register(TaskKind.DAILY_SYNC_CHAIN, self._run_daily_chain_task)
        self.adapters = adapters

        self.alerts = alerts or AlertNotifier(
            self.config.alerts,
            enabled=self.config.system_alerts_enabled,
            clock=clock,
        )
        self.registry = RunningTaskRegistry(clock=clock)
        self.detached = DetachedTaskSet()
        self.executor = TaskExecutor(
            self.store,
            self.registry,
            self.adapters,
            alerts=self.alerts,
            detached=self.detached,
            clock=clock,
        )
        self.loop = SchedulerLoop(
            self.store,
            self.executor,
            self.registry,
            check_interval_seconds=self.config.scheduler.check_interval_seconds,
            startup_delay_seconds=self.config.scheduler.startup_delay_seconds,
            detached=self.detached,
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        """Whether the enable gate is open."""
        return self.config.scheduler.enabled

    async def open(self) -> None:
        """Connect to the database and create the schema."""
        await self.db.connect()
        await self.store.initialize()
        await self.records.initialize()

    async def initialize_scheduler(self) -> bool:
        """
        Start the scheduler when the enable gate is open.

        Runs the crash recovery sweep before the first poll.

        Returns:
            True if the scheduler loop was started
        """
        await self.open()
        if not self.is_production:
            logger.info("Scheduler disabled (not production and ENABLE_SCHEDULER not set)")
            return False
        await self.loop.start()
        return True

    async def stop_scheduler(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop polling and optionally wait for in-flight runs."""
        await self.loop.stop(wait=wait, timeout=timeout)

    async def close(self) -> None:
        """Stop everything and release connections."""
        await self.stop_scheduler(wait=True)
        if self._lms is not None:
            await self._lms.aclose()
        if self._crm is not None:
            await self._crm.aclose()
        await self.db.close()

    async def __aenter__(self) -> "SchedulerService":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    async def get_all_tasks(self) -> list[TaskDefinition]:
        """All task definitions with run statistics."""
        return await self.store.get_all_tasks()

    async def get_task(self, task_type: str) -> Optional[TaskDefinition]:
        """One task definition, or None."""
        return await self.store.get_task(task_type)

    async def set_task_enabled(self, task_type: str, enabled: bool) -> TaskDefinition:
        """Enable (due now) or disable (unscheduled) a task."""
        return await self.store.set_task_enabled(task_type, enabled, now=self._clock())

    async def get_task_history(
        self,
        task_type: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[TaskRunHistory]:
        """Recent runs of a task, newest first."""
        return await self.store.get_task_history(task_type, limit)

    async def update_task_config(self, task_type: str, config: dict[str, Any]) -> TaskDefinition:
        """
        Validate and store a task's configuration.

        Raises:
            TaskNotFoundError: If the task type does not exist
            TaskConfigError: If the config does not match the task kind
            UnknownTaskKindError: If the task type has no kind
        """
        await self.store.require_task(task_type)
        kind, _ = self.adapters.resolve(task_type)
        validated = parse_task_config(kind, config)
        return await self.store.update_task_config(task_type, config_to_dict(validated), now=self._clock())

    async def update_task_schedule(
        self,
        task_type: str,
        interval_minutes: int,
        schedule_day: Optional[int] = None,
        schedule_time: Optional[str] = None,
    ) -> TaskDefinition:
        """Change a task's interval or weekly slot."""
        if schedule_day is not None and not 0 <= schedule_day <= 6:
            raise ValueError(f"schedule_day must be between 0 and 6, got {schedule_day}")
        return await self.store.update_task_schedule(
            task_type, interval_minutes, schedule_day, schedule_time, now=self._clock()
        )

    async def seed_default_tasks(self, path: Optional[Path] = None, overwrite: bool = False) -> int:
        """Load the default task catalog."""
        return await self.store.seed_from_yaml(path or DEFAULT_TASKS_FILE, overwrite=overwrite)

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    async def trigger_task(self, task_type: str, wait: bool = False) -> dict[str, Any]:
        """
        Run a task now, outside its schedule.

        Args:
            task_type: Task to run
            wait: Await the run instead of detaching it

        Returns:
            The run result when waiting, otherwise a started marker

        Raises:
            TaskNotFoundError: If the task type does not exist
            MutexViolationError: If the task type is already running
            TaskExecutionError: If waiting and the run failed
        """
        task = await self.store.require_task(task_type)
        if self.registry.is_running(task_type):
            raise MutexViolationError(task_type)

        logger.info(f"Manual trigger of {task_type}")
        if wait:
            return await self.executor.run_task(task)
        self.detached.spawn(self._run_triggered(task), name=f"trigger:{task_type}")
        return {"started": True, "task_type": task_type}

    async def _run_triggered(self, task: TaskDefinition) -> None:
        try:
            await self.executor.run_task(task)
        except Exception as e:
            logger.error(f"Triggered run of {task.task_type} failed: {e}")

    async def run_daily_sync_chain(
        self,
        options: Union[DailyChainConfig, dict[str, Any], None] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> dict[str, Any]:
        """
        Run the daily sync chain and return its summary.

        Holds the ``daily_sync_chain`` mutex for the whole run, so a manual
        run and the scheduled chain task never overlap.

        Raises:
            MutexViolationError: If the chain is already running
            ChainAbortedError: If a required step failed
        """
        chain_type = TaskKind.DAILY_SYNC_CHAIN.value
        if self.registry.is_running(chain_type):
            raise MutexViolationError(chain_type)

        self.registry.register(chain_type)
        try:
            return await self._execute_daily_chain(
                options,
                on_progress or self.registry.progress_callback(chain_type),
            )
        finally:
            self.registry.unregister(chain_type)

    async def _execute_daily_chain(
        self,
        options: Union[DailyChainConfig, dict[str, Any], None],
        on_progress: Optional[ProgressCallback],
    ) -> dict[str, Any]:
        if not isinstance(options, DailyChainConfig):
            options = parse_task_config(TaskKind.DAILY_SYNC_CHAIN, options)
        chain = build_daily_sync_chain(
            self._run_chain_step,
            options,
            clock=self._clock,
            on_progress=on_progress,
        )
        run = await chain.run()
        return run.to_dict()

    async def _run_chain_step(self, task_type: str, config: Optional[dict[str, Any]]) -> dict[str, Any]:
        task = await self.store.get_task(task_type)
        if task is None:
            return await self.executor.run_unscheduled(task_type, config)
        if config is not None:
            task = replace(task, config={**task.config, **config})
        return await self.executor.run_task(task)

    async def _run_daily_chain_task(
        self,
        config: DailyChainConfig,
        on_progress: ProgressCallback,
    ) -> dict[str, Any]:
        summary = await self._execute_daily_chain(config, on_progress)
        records = sum(
            int((step.get("output") or {}).get("records_processed", 0))
            for step in summary["steps"]
            if isinstance(step.get("output"), dict)
        )
        return {"records_processed": records, "chain": summary}

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_scheduler_status(self) -> dict[str, Any]:
        """Snapshot of the scheduler for the status surface."""
        return {
            "running": self.loop.is_running,
            "is_production": self.is_production,
            "system_alerts_enabled": self.alerts.enabled,
            "active_tasks": self.registry.snapshot(),
            "check_interval": self.loop.check_interval_seconds,
        }

    def set_system_alerts_enabled(self, enabled: bool) -> bool:
        """Turn failure alerts on or off. Returns the new state."""
        self.alerts.set_enabled(enabled)
        return self.alerts.enabled
