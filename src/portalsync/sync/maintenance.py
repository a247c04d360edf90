"""
Composite and housekeeping adapters.

LmsSyncAdapter runs several entity syncs in one task and tolerates
individual failures. CleanupAdapter enforces log retention.
"""

import logging
from datetime import datetime
from typing import Any, Callable

from portalsync.sync.records import SyncRecordStore
from portalsync.tasks.configs import CleanupConfig, EntitySyncConfig, LmsSyncConfig
from portalsync.tasks.dispatch import SyncAdapter
from portalsync.tasks.store import TaskStore
from portalsync.tasks.tracker import ProgressCallback

logger = logging.getLogger(__name__)


class LmsSyncAdapter:
    """
    Run the configured entity syncs in order.

    A failing entity is recorded in the result and the remaining entities
    still run.

    Args:
        adapters: Entity name to incremental-capable adapter
    """

    def __init__(self, adapters: dict[str, SyncAdapter]) -> None:
        self._adapters = adapters

    async def __call__(self, config: LmsSyncConfig, on_progress: ProgressCallback) -> dict[str, Any]:
        results: dict[str, Any] = {}
        errors: list[str] = []
        total_records = 0

        for name in config.sync_types:
            sub_config = EntitySyncConfig(
                mode=config.mode,
                max_age_days=config.enrollment_max_age_days if name == "enrollments" else None,
            )
            try:
                result = await self._adapters[name](sub_config, on_progress)
            except Exception as e:
                logger.error(f"LMS sync of {name} failed: {e}")
                results[name] = {"error": str(e) or e.__class__.__name__}
                errors.append(name)
                continue
            results[name] = result
            total_records += int(result.get("records_processed", 0))

        return {
            "records_processed": total_records,
            "results": results,
            "errors": errors,
        }


class CleanupAdapter:
    """Delete sync logs and run history past the retention window."""

    def __init__(
        self,
        task_store: TaskStore,
        records: SyncRecordStore,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._task_store = task_store
        self._records = records
        self._clock = clock

    async def __call__(self, config: CleanupConfig, on_progress: ProgressCallback) -> dict[str, Any]:
        on_progress("Cleaning up logs", 0, 2)
        sync_logs = await self._records.purge_logs(config.keep_logs_days)
        on_progress("Cleaning up run history", 1, 2)
        history = await self._task_store.purge_history(config.keep_logs_days, now=self._clock())
        on_progress("Complete", 2, 2)
        logger.info(
            f"Cleanup removed {sync_logs} sync logs and {history} history rows "
            f"older than {config.keep_logs_days} days"
        )
        return {
            "records_processed": sync_logs + history,
            "sync_logs_deleted": sync_logs,
            "history_deleted": history,
        }
