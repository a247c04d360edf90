"""
Common plumbing for sync adapters.

A logged adapter writes a ``sync_logs`` row around every run so the
next incremental run can find its watermark.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from portalsync.sync.records import SyncLogStatus, SyncRecordStore
from portalsync.tasks.constants import SyncMode
from portalsync.tasks.tracker import ProgressCallback

logger = logging.getLogger(__name__)


UPSERT_BATCH_SIZE = 100


class LoggedSyncAdapter(ABC):
    """Base for adapters that record their runs in ``sync_logs``."""

    def __init__(self, sync_type: str, records: SyncRecordStore) -> None:
        self.sync_type = sync_type
        self._records = records

    async def resolve_mode(
        self,
        requested: SyncMode,
        force_full: bool = False,
    ) -> tuple[SyncMode, Optional[datetime]]:
        """
        Decide between an incremental and a full pull.

        Incremental needs a watermark; without one the pull is full.

        Returns:
            (mode, since) where since is None for a full pull
        """
        if force_full or requested == SyncMode.FULL:
            return SyncMode.FULL, None
        since = await self._records.get_watermark(self.sync_type)
        if since is None:
            logger.info(f"No previous {self.sync_type} sync found, running full sync")
            return SyncMode.FULL, None
        logger.info(f"Incremental {self.sync_type} sync since {since.isoformat()}")
        return SyncMode.INCREMENTAL, since

    async def logged_run(
        self,
        mode: SyncMode,
        run: Any,
    ) -> dict[str, Any]:
        """Await ``run`` between opening and closing a sync log row."""
        log_id = await self._records.start_log(self.sync_type, mode.value)
        try:
            stats = await run
        except Exception as e:
            await self._records.finish_log(
                log_id, SyncLogStatus.FAILED, {"mode": mode.value}, str(e) or e.__class__.__name__
            )
            raise
        await self._records.finish_log(log_id, SyncLogStatus.COMPLETED, stats)
        return stats

    async def store_in_batches(
        self,
        entity: str,
        items: list[dict[str, Any]],
        on_progress: ProgressCallback,
        label: str,
    ) -> tuple[int, int]:
        """Upsert records in batches, reporting progress after each."""
        created = updated = 0
        total = len(items)
        on_progress(f"Syncing {label}", 0, total)
        for start in range(0, total, UPSERT_BATCH_SIZE):
            batch = items[start:start + UPSERT_BATCH_SIZE]
            c, u = await self._records.upsert_records(entity, batch)
            created += c
            updated += u
            on_progress(f"Syncing {label}", min(start + len(batch), total), total)
        return created, updated

    @abstractmethod
    async def __call__(self, config: Any, on_progress: ProgressCallback) -> dict[str, Any]:
        """Run the sync."""
