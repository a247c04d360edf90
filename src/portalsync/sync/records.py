"""
Landing tables for synced data.

``sync_records`` holds the raw payload of every fetched entity keyed by
entity type and external id. ``sync_logs`` holds one row per adapter
run; the latest completed row of a sync type is that type's watermark
for incremental syncs.
"""

import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from portalsync.core.database import Database
from portalsync.tasks.models import from_db_time, to_db_time

logger = logging.getLogger(__name__)


SYNC_RECORDS_TABLE = "sync_records"
SYNC_LOGS_TABLE = "sync_logs"

SYNC_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {SYNC_RECORDS_TABLE} (
    entity TEXT NOT NULL,
    external_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    synced_at TEXT NOT NULL,
    PRIMARY KEY (entity, external_id)
);

CREATE TABLE IF NOT EXISTS {SYNC_LOGS_TABLE} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sync_type TEXT NOT NULL,
    mode TEXT,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    records_processed INTEGER DEFAULT 0,
    records_created INTEGER DEFAULT 0,
    records_updated INTEGER DEFAULT 0,
    records_failed INTEGER DEFAULT 0,
    details TEXT,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_logs_type
    ON {SYNC_LOGS_TABLE}(sync_type, status, completed_at DESC);
"""


class SyncLogStatus(str, Enum):
    """Status of a sync log row."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncRecordStore:
    """Persistence for synced entity payloads and sync logs."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = datetime.now) -> None:
        self._db = db
        self._clock = clock
        self._initialized = False

    async def initialize(self) -> None:
        """Create the schema if needed."""
        if self._initialized:
            return
        await self._db.connect()
        await self._db.executescript(SYNC_SCHEMA)
        self._initialized = True

    # -------------------------------------------------------------------------
    # Sync Logs
    # -------------------------------------------------------------------------

    async def get_watermark(self, sync_type: str) -> Optional[datetime]:
        """Completion time of the latest successful sync of a type."""
        await self.initialize()
        row = await self._db.fetchone(
            f"""
            SELECT completed_at FROM {SYNC_LOGS_TABLE}
            WHERE sync_type = ? AND status = ?
            ORDER BY completed_at DESC LIMIT 1
            """,
            (sync_type, SyncLogStatus.COMPLETED.value),
        )
        return from_db_time(row["completed_at"]) if row else None

    async def start_log(self, sync_type: str, mode: str) -> int:
        """Open a running sync log row."""
        await self.initialize()
        return await self._db.insert(
            f"INSERT INTO {SYNC_LOGS_TABLE} (sync_type, mode, status, started_at) VALUES (?, ?, ?, ?)",
            (sync_type, mode, SyncLogStatus.RUNNING.value, to_db_time(self._clock())),
        )

    async def finish_log(
        self,
        log_id: int,
        status: SyncLogStatus,
        stats: dict[str, Any],
        error_message: Optional[str] = None,
    ) -> None:
        """Close a sync log row with its statistics."""
        await self._db.execute(
            f"""
            UPDATE {SYNC_LOGS_TABLE}
            SET status = ?, completed_at = ?, records_processed = ?, records_created = ?,
                records_updated = ?, records_failed = ?, details = ?, error_message = ?
            WHERE id = ?
            """,
            (
                status.value,
                to_db_time(self._clock()),
                stats.get("records_processed", 0),
                stats.get("created", 0),
                stats.get("updated", 0),
                stats.get("failed", 0),
                json.dumps(stats, default=str),
                error_message,
                log_id,
            ),
        )

    async def purge_logs(self, older_than_days: int) -> int:
        """Delete finished sync logs older than the retention window."""
        await self.initialize()
        cutoff = self._clock() - timedelta(days=older_than_days)
        return await self._db.execute(
            f"DELETE FROM {SYNC_LOGS_TABLE} WHERE started_at < ? AND status != ?",
            (to_db_time(cutoff), SyncLogStatus.RUNNING.value),
        )

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    async def upsert_records(
        self,
        entity: str,
        records: Iterable[dict[str, Any]],
        key: str = "id",
    ) -> tuple[int, int]:
        """
        Insert or replace entity payloads.

        Returns:
            (created, updated)
        """
        await self.initialize()
        rows = [r for r in records if r.get(key) is not None]
        if not rows:
            return 0, 0

        existing = await self.external_ids(entity)
        stamp = to_db_time(self._clock())
        await self._db.executemany(
            f"""
            INSERT INTO {SYNC_RECORDS_TABLE} (entity, external_id, payload, synced_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(entity, external_id) DO UPDATE SET
                payload = excluded.payload,
                synced_at = excluded.synced_at
            """,
            [(entity, str(r[key]), json.dumps(r, default=str), stamp) for r in rows],
        )
        created = sum(1 for r in rows if str(r[key]) not in existing)
        return created, len(rows) - created

    async def external_ids(self, entity: str) -> set[str]:
        """Ids of every stored record of an entity type."""
        await self.initialize()
        rows = await self._db.fetchall(
            f"SELECT external_id FROM {SYNC_RECORDS_TABLE} WHERE entity = ?",
            (entity,),
        )
        return {r["external_id"] for r in rows}

    async def list_records(self, entity: str) -> list[dict[str, Any]]:
        """Stored payloads of an entity type."""
        await self.initialize()
        rows = await self._db.fetchall(
            f"SELECT payload FROM {SYNC_RECORDS_TABLE} WHERE entity = ? ORDER BY external_id",
            (entity,),
        )
        return [json.loads(r["payload"]) for r in rows]

    async def synced_at_map(self, entity: str) -> dict[str, datetime]:
        """When each stored record of an entity type was last written."""
        await self.initialize()
        rows = await self._db.fetchall(
            f"SELECT external_id, synced_at FROM {SYNC_RECORDS_TABLE} WHERE entity = ?",
            (entity,),
        )
        return {r["external_id"]: from_db_time(r["synced_at"]) for r in rows}

    async def count(self, entity: str) -> int:
        """Number of stored records of an entity type."""
        await self.initialize()
        row = await self._db.fetchone(
            f"SELECT COUNT(*) AS n FROM {SYNC_RECORDS_TABLE} WHERE entity = ?",
            (entity,),
        )
        return int(row["n"]) if row else 0
