"""CRM partner and contact sync."""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from portalsync.orchestration.context import current_sync_context
from portalsync.sync.base import LoggedSyncAdapter
from portalsync.sync.crm import CrmClient
from portalsync.sync.records import SyncRecordStore
from portalsync.tasks.configs import CrmSyncConfig
from portalsync.tasks.constants import SyncMode
from portalsync.tasks.tracker import ProgressCallback

logger = logging.getLogger(__name__)


CrmFetcher = Callable[[Optional[datetime]], Awaitable[list[dict[str, Any]]]]


class _CrmObjectSync(LoggedSyncAdapter):
    """One CRM object type, synced into its own entity."""

    def __init__(self, sync_type: str, entity: str, fetch: CrmFetcher, records: SyncRecordStore) -> None:
        super().__init__(sync_type, records)
        self.entity = entity
        self._fetch = fetch

    async def __call__(self, config: CrmSyncConfig, on_progress: ProgressCallback) -> dict[str, Any]:
        mode, since = await self.resolve_mode(config.mode)
        return await self.logged_run(mode, self._sync(mode, since, on_progress))

    async def _sync(
        self,
        mode: SyncMode,
        since: Optional[datetime],
        on_progress: ProgressCallback,
    ) -> dict[str, Any]:
        on_progress(f"Fetching {self.entity}", 0, 0)
        ctx = current_sync_context()
        if mode == SyncMode.FULL and ctx is not None:
            items = await ctx.get_all_or_fetch(self.entity, lambda: self._fetch(None), key="Id")
        else:
            items = await self._fetch(since)

        rows = [{**item, "id": item.get("Id")} for item in items]
        created, updated = await self.store_in_batches(self.entity, rows, on_progress, self.entity)
        return {
            "records_processed": len(rows),
            "created": created,
            "updated": updated,
            "mode": mode.value,
            "since": since.isoformat() if since else None,
        }


class CrmSyncAdapter:
    """Sync partner accounts, then their contacts."""

    def __init__(self, crm: CrmClient, records: SyncRecordStore) -> None:
        self.partners = _CrmObjectSync("crm_partners", "crm_accounts", crm.list_accounts, records)
        self.contacts = _CrmObjectSync("crm_contacts", "crm_users", crm.list_users, records)

    async def __call__(self, config: CrmSyncConfig, on_progress: ProgressCallback) -> dict[str, Any]:
        on_progress("Starting CRM sync", 0, 2)
        partners = await self.partners(config, on_progress)
        contacts = await self.contacts(config, on_progress)
        on_progress("Complete", 2, 2)
        logger.info(
            f"CRM sync ({config.mode.value}): {partners['records_processed']} partners, "
            f"{contacts['records_processed']} contacts"
        )
        return {
            "records_processed": partners["records_processed"] + contacts["records_processed"],
            "partners": partners,
            "contacts": contacts,
        }
