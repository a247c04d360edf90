"""
Task store for persistence.

This module persists the task catalog (one row per task type) and the
append-only run history in the relational store. All lifecycle updates
are single statements committed independently; there is no optimistic
concurrency because only the executor writes run state.
"""

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import yaml

from portalsync.core.database import Database
from portalsync.core.exceptions import ConfigurationError, TaskNotFoundError
from portalsync.tasks.constants import (
    DEFAULT_HISTORY_LIMIT,
    RECOVERY_ERROR_MESSAGE,
    SCHEDULED_TASKS_TABLE,
    TASK_RUN_HISTORY_TABLE,
    RunStatus,
    TaskStatus,
)
from portalsync.tasks.models import TaskDefinition, TaskRunHistory, to_db_time

logger = logging.getLogger(__name__)


# =============================================================================
# Database Schema
# =============================================================================

TASKS_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {SCHEDULED_TASKS_TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_type TEXT NOT NULL UNIQUE,
    task_name TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 0,
    interval_minutes INTEGER NOT NULL,
    schedule_day INTEGER,
    schedule_time TEXT,
    config TEXT,
    last_status TEXT NOT NULL DEFAULT 'idle',
    last_error TEXT,
    last_run_at TEXT,
    last_duration_seconds INTEGER,
    run_count INTEGER NOT NULL DEFAULT 0,
    fail_count INTEGER NOT NULL DEFAULT 0,
    next_run_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_due
    ON {SCHEDULED_TASKS_TABLE}(enabled, next_run_at);

CREATE TABLE IF NOT EXISTS {TASK_RUN_HISTORY_TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER,
    task_type TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL,
    duration_seconds INTEGER,
    records_processed INTEGER,
    result_summary TEXT,
    error_message TEXT,
    FOREIGN KEY (task_id) REFERENCES {SCHEDULED_TASKS_TABLE}(id) ON DELETE SET NULL
);

CREATE INDEX IF NOT EXISTS idx_task_run_history_type
    ON {TASK_RUN_HISTORY_TABLE}(task_type, started_at DESC);
CREATE INDEX IF NOT EXISTS idx_task_run_history_status
    ON {TASK_RUN_HISTORY_TABLE}(status);
"""


# =============================================================================
# Task Store Implementation
# =============================================================================

class TaskStore:
    """
    Persistent storage for task definitions and run history.

    The store never decides scheduling policy; callers pass in the
    timestamps and next-run values they computed.
    """

    def __init__(self, db: Database) -> None:
        """
        Initialize task store.

        Args:
            db: Shared database connection
        """
        self._db = db
        self._initialized = False

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the schema if needed."""
        if self._initialized:
            return
        await self._db.connect()
        await self._db.executescript(TASKS_SCHEMA)
        self._initialized = True

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    # -------------------------------------------------------------------------
    # Catalog Queries
    # -------------------------------------------------------------------------

    async def get_all_tasks(self) -> list[TaskDefinition]:
        """
        Get every task definition with run statistics.

        Returns:
            Definitions ordered by task name, each with ``total_runs`` and
            ``last_success`` filled in
        """
        await self._ensure_initialized()
        rows = await self._db.fetchall(
            f"""
            SELECT t.*,
                (SELECT COUNT(*) FROM {TASK_RUN_HISTORY_TABLE} h
                    WHERE h.task_type = t.task_type) AS total_runs,
                (SELECT MAX(h.started_at) FROM {TASK_RUN_HISTORY_TABLE} h
                    WHERE h.task_type = t.task_type AND h.status = ?) AS last_success
            FROM {SCHEDULED_TASKS_TABLE} t
            ORDER BY t.task_name
            """,
            (RunStatus.SUCCESS.value,),
        )
        return [TaskDefinition.from_row(r) for r in rows]

    async def get_task(self, task_type: str) -> Optional[TaskDefinition]:
        """Get a task definition by type."""
        await self._ensure_initialized()
        row = await self._db.fetchone(
            f"SELECT * FROM {SCHEDULED_TASKS_TABLE} WHERE task_type = ?",
            (task_type,),
        )
        return TaskDefinition.from_row(row) if row else None

    async def require_task(self, task_type: str) -> TaskDefinition:
        """Get a task definition or raise TaskNotFoundError."""
        task = await self.get_task(task_type)
        if task is None:
            raise TaskNotFoundError(task_type)
        return task

    async def get_due_tasks(self, now: datetime) -> list[TaskDefinition]:
        """
        Get enabled tasks whose next run time has arrived.

        Tasks that were never scheduled (NULL next_run_at) sort first.
        """
        await self._ensure_initialized()
        rows = await self._db.fetchall(
            f"""
            SELECT * FROM {SCHEDULED_TASKS_TABLE}
            WHERE enabled = 1 AND (next_run_at IS NULL OR next_run_at <= ?)
            ORDER BY next_run_at ASC
            """,
            (to_db_time(now),),
        )
        return [TaskDefinition.from_row(r) for r in rows]

    async def get_task_history(
        self,
        task_type: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[TaskRunHistory]:
        """Get the most recent runs of a task, newest first."""
        await self._ensure_initialized()
        rows = await self._db.fetchall(
            f"""
            SELECT * FROM {TASK_RUN_HISTORY_TABLE}
            WHERE task_type = ?
            ORDER BY started_at DESC, id DESC
            LIMIT ?
            """,
            (task_type, limit),
        )
        return [TaskRunHistory.from_row(r) for r in rows]

    # -------------------------------------------------------------------------
    # Catalog Mutations
    # -------------------------------------------------------------------------

    async def set_task_enabled(
        self,
        task_type: str,
        enabled: bool,
        now: Optional[datetime] = None,
    ) -> TaskDefinition:
        """
        Enable or disable a task.

        Enabling makes the task due immediately; disabling clears its
        next run time.

        Raises:
            TaskNotFoundError: If the task type does not exist
        """
        await self._ensure_initialized()
        now = now or datetime.now()
        next_run_at = to_db_time(now) if enabled else None
        updated = await self._db.execute(
            f"""
            UPDATE {SCHEDULED_TASKS_TABLE}
            SET enabled = ?, next_run_at = ?, updated_at = ?
            WHERE task_type = ?
            """,
            (1 if enabled else 0, next_run_at, to_db_time(now), task_type),
        )
        if updated == 0:
            raise TaskNotFoundError(task_type)
        logger.info(f"Task {task_type} {'enabled' if enabled else 'disabled'}")
        return await self.require_task(task_type)

    async def update_task_config(
        self,
        task_type: str,
        config: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> TaskDefinition:
        """Replace a task's stored configuration."""
        await self._ensure_initialized()
        now = now or datetime.now()
        updated = await self._db.execute(
            f"UPDATE {SCHEDULED_TASKS_TABLE} SET config = ?, updated_at = ? WHERE task_type = ?",
            (json.dumps(config), to_db_time(now), task_type),
        )
        if updated == 0:
            raise TaskNotFoundError(task_type)
        return await self.require_task(task_type)

    async def update_task_schedule(
        self,
        task_type: str,
        interval_minutes: int,
        schedule_day: Optional[int] = None,
        schedule_time: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TaskDefinition:
        """Change how often a task runs. Takes effect after its next run."""
        await self._ensure_initialized()
        now = now or datetime.now()
        updated = await self._db.execute(
            f"""
            UPDATE {SCHEDULED_TASKS_TABLE}
            SET interval_minutes = ?, schedule_day = ?, schedule_time = ?, updated_at = ?
            WHERE task_type = ?
            """,
            (interval_minutes, schedule_day, schedule_time, to_db_time(now), task_type),
        )
        if updated == 0:
            raise TaskNotFoundError(task_type)
        return await self.require_task(task_type)

    async def upsert_task(
        self,
        definition: TaskDefinition,
        overwrite: bool = True,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Insert a catalog row, or update its definition fields.

        Run statistics and the enabled flag of an existing row are never
        touched.

        Args:
            definition: Definition to store
            overwrite: Update name, interval, schedule and config of an
                existing row; when False an existing row is left alone
            now: Timestamp for created/updated columns

        Returns:
            True if a row was inserted or updated
        """
        await self._ensure_initialized()
        now = now or datetime.now()
        stamp = to_db_time(now)
        next_run_at = stamp if definition.enabled else None

        if overwrite:
            conflict = """
                DO UPDATE SET
                    task_name = excluded.task_name,
                    interval_minutes = excluded.interval_minutes,
                    schedule_day = excluded.schedule_day,
                    schedule_time = excluded.schedule_time,
                    config = excluded.config,
                    updated_at = excluded.updated_at
            """
        else:
            conflict = "DO NOTHING"

        changed = await self._db.execute(
            f"""
            INSERT INTO {SCHEDULED_TASKS_TABLE} (
                task_type, task_name, enabled, interval_minutes,
                schedule_day, schedule_time, config, last_status,
                next_run_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(task_type) {conflict}
            """,
            (
                definition.task_type,
                definition.task_name,
                1 if definition.enabled else 0,
                definition.interval_minutes,
                definition.schedule_day,
                definition.schedule_time,
                json.dumps(definition.config),
                TaskStatus.IDLE.value,
                next_run_at,
                stamp,
                stamp,
            ),
        )
        return changed > 0

    async def seed_from_yaml(self, path: Path, overwrite: bool = False) -> int:
        """
        Load default task definitions from a YAML catalog.

        The file holds a ``tasks`` list of mappings with ``task_type``,
        ``task_name``, ``interval_minutes`` and optional ``enabled``,
        ``schedule_day``, ``schedule_time`` and ``config``.

        Returns:
            Number of rows inserted or updated
        """
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise ConfigurationError("Task catalog not found", details={"path": str(path)}) from e
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in task catalog: {e}",
                details={"path": str(path)},
            ) from e

        entries = data.get("tasks", []) if isinstance(data, dict) else []
        count = 0
        for entry in entries:
            try:
                definition = TaskDefinition.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid task catalog entry: {e}",
                    details={"path": str(path)},
                ) from e
            if await self.upsert_task(definition, overwrite=overwrite):
                count += 1

        logger.info(f"Seeded {count} task definitions from {path}")
        return count

    # -------------------------------------------------------------------------
    # Lifecycle Writes
    # -------------------------------------------------------------------------

    async def mark_running(self, task_type: str, now: datetime) -> None:
        """Record that a run has started."""
        await self._db.execute(
            f"""
            UPDATE {SCHEDULED_TASKS_TABLE}
            SET last_status = ?, last_run_at = ?, updated_at = ?
            WHERE task_type = ?
            """,
            (TaskStatus.RUNNING.value, to_db_time(now), to_db_time(now), task_type),
        )

    async def mark_success(
        self,
        task_type: str,
        duration_seconds: int,
        next_run_at: datetime,
        now: datetime,
    ) -> None:
        """Record a successful run and schedule the next one."""
        await self._db.execute(
            f"""
            UPDATE {SCHEDULED_TASKS_TABLE}
            SET last_status = ?, last_error = NULL, last_duration_seconds = ?,
                run_count = run_count + 1, next_run_at = ?, updated_at = ?
            WHERE task_type = ?
            """,
            (
                TaskStatus.SUCCESS.value,
                duration_seconds,
                to_db_time(next_run_at),
                to_db_time(now),
                task_type,
            ),
        )

    async def mark_failed(
        self,
        task_type: str,
        error_message: str,
        duration_seconds: int,
        next_run_at: datetime,
        now: datetime,
    ) -> None:
        """Record a failed run and schedule the retry."""
        await self._db.execute(
            f"""
            UPDATE {SCHEDULED_TASKS_TABLE}
            SET last_status = ?, last_error = ?, last_duration_seconds = ?,
                fail_count = fail_count + 1, next_run_at = ?, updated_at = ?
            WHERE task_type = ?
            """,
            (
                TaskStatus.FAILED.value,
                error_message,
                duration_seconds,
                to_db_time(next_run_at),
                to_db_time(now),
                task_type,
            ),
        )

    async def create_history(
        self,
        task_type: str,
        started_at: datetime,
        task_id: Optional[int] = None,
    ) -> int:
        """Append a running history entry. Returns its id."""
        return await self._db.insert(
            f"""
            INSERT INTO {TASK_RUN_HISTORY_TABLE} (task_id, task_type, started_at, status)
            VALUES (?, ?, ?, ?)
            """,
            (task_id, task_type, to_db_time(started_at), RunStatus.RUNNING.value),
        )

    async def complete_history(
        self,
        history_id: int,
        completed_at: datetime,
        duration_seconds: int,
        records_processed: int,
        result_summary: dict[str, Any],
    ) -> None:
        """Close a history entry as successful."""
        await self._db.execute(
            f"""
            UPDATE {TASK_RUN_HISTORY_TABLE}
            SET status = ?, completed_at = ?, duration_seconds = ?,
                records_processed = ?, result_summary = ?
            WHERE id = ?
            """,
            (
                RunStatus.SUCCESS.value,
                to_db_time(completed_at),
                duration_seconds,
                records_processed,
                json.dumps(result_summary, default=str),
                history_id,
            ),
        )

    async def fail_history(
        self,
        history_id: int,
        completed_at: datetime,
        duration_seconds: int,
        error_message: str,
    ) -> None:
        """Close a history entry as failed."""
        await self._db.execute(
            f"""
            UPDATE {TASK_RUN_HISTORY_TABLE}
            SET status = ?, completed_at = ?, duration_seconds = ?, error_message = ?
            WHERE id = ?
            """,
            (
                RunStatus.FAILED.value,
                to_db_time(completed_at),
                duration_seconds,
                error_message,
                history_id,
            ),
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def recover_interrupted_runs(self, now: datetime) -> tuple[int, int]:
        """
        Reconcile runs left open by a previous process.

        Every definition still marked running becomes failed, and every
        open history row becomes cancelled.

        Returns:
            (definitions reset, history rows cancelled)
        """
        await self._ensure_initialized()
        tasks_reset = await self._db.execute(
            f"""
            UPDATE {SCHEDULED_TASKS_TABLE}
            SET last_status = ?, last_error = ?, updated_at = ?
            WHERE last_status = ?
            """,
            (
                TaskStatus.FAILED.value,
                RECOVERY_ERROR_MESSAGE,
                to_db_time(now),
                TaskStatus.RUNNING.value,
            ),
        )
        runs_cancelled = await self._db.execute(
            f"""
            UPDATE {TASK_RUN_HISTORY_TABLE}
            SET status = ?, completed_at = ?, error_message = ?
            WHERE status = ?
            """,
            (
                RunStatus.CANCELLED.value,
                to_db_time(now),
                RECOVERY_ERROR_MESSAGE,
                RunStatus.RUNNING.value,
            ),
        )
        return tasks_reset, runs_cancelled

    async def purge_history(self, older_than_days: int, now: Optional[datetime] = None) -> int:
        """Delete finished run history older than the retention window."""
        await self._ensure_initialized()
        cutoff = (now or datetime.now()) - timedelta(days=older_than_days)
        return await self._db.execute(
            f"DELETE FROM {TASK_RUN_HISTORY_TABLE} WHERE started_at < ? AND status != ?",
            (to_db_time(cutoff), RunStatus.RUNNING.value),
        )
