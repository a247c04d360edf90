"""
portalsync Task System Module.

This module provides the persistent task catalog, the run lifecycle,
and the polling scheduler.

Public API:
-----------

Constants and Enums:
    TaskStatus - Last known status of a task definition
    RunStatus - Status of a run history entry
    TaskKind - Every dispatchable task type
    SyncMode - Incremental or full sync

Models:
    TaskDefinition - A schedulable task (one per task type)
    TaskRunHistory - One execution attempt
    compute_next_run_at - Next run after success
    compute_retry_at - Next run after failure

Configuration:
    parse_task_config - Validate raw config for a kind
    EntitySyncConfig, LmsSyncConfig, CrmSyncConfig,
    CleanupConfig, DailyChainConfig - Per-kind config models

Execution:
    RunningTaskRegistry - In-memory mutex and progress map
    TaskProgress - Progress reported by a running task
    AdapterRegistry - TaskKind to adapter dispatch
    TaskExecutor - Runs one task through its lifecycle
    SchedulerLoop - Periodic due-task poller
    DetachedTaskSet - Tracking for fire-and-forget runs

Storage:
    TaskStore - Catalog and history persistence

Example Usage:
--------------

    db = Database("portalsync.db")
    store = TaskStore(db)
    await store.initialize()

    registry = RunningTaskRegistry()
    executor = TaskExecutor(store, registry, adapters)
    loop = SchedulerLoop(store, executor, registry, check_interval_seconds=60)
    await loop.start()
"""

from portalsync.tasks.background import DetachedTaskSet
from portalsync.tasks.configs import (
    CleanupConfig,
    CrmSyncConfig,
    DailyChainConfig,
    EntitySyncConfig,
    LmsSyncConfig,
    TaskConfig,
    config_to_dict,
    parse_task_config,
)
from portalsync.tasks.constants import (
    RETRY_CAP_MINUTES,
    RunStatus,
    SyncMode,
    TaskKind,
    TaskStatus,
)
from portalsync.tasks.dispatch import AdapterRegistry, SyncAdapter
from portalsync.tasks.executor import TaskExecutor
from portalsync.tasks.models import (
    TaskDefinition,
    TaskRunHistory,
    compute_next_run_at,
    compute_retry_at,
)
from portalsync.tasks.scheduler import LoopState, SchedulerLoop
from portalsync.tasks.store import TaskStore
from portalsync.tasks.tracker import (
    ProgressCallback,
    RunningTaskInfo,
    RunningTaskRegistry,
    TaskProgress,
)

__all__ = [
    # Constants
    "TaskStatus",
    "RunStatus",
    "TaskKind",
    "SyncMode",
    "RETRY_CAP_MINUTES",
    # Models
    "TaskDefinition",
    "TaskRunHistory",
    "compute_next_run_at",
    "compute_retry_at",
    # Configuration
    "TaskConfig",
    "EntitySyncConfig",
    "LmsSyncConfig",
    "CrmSyncConfig",
    "CleanupConfig",
    "DailyChainConfig",
    "parse_task_config",
    "config_to_dict",
    # Execution
    "RunningTaskRegistry",
    "RunningTaskInfo",
    "TaskProgress",
    "ProgressCallback",
    "AdapterRegistry",
    "SyncAdapter",
    "TaskExecutor",
    "SchedulerLoop",
    "LoopState",
    "DetachedTaskSet",
    # Storage
    "TaskStore",
]
