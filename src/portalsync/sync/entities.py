"""
LMS entity sync adapters.

EntitySyncAdapter pulls one LMS list endpoint (users, groups, courses,
course properties) either completely or only the records updated since
the watermark. Complete lists are shared through the active SyncContext
so other steps of the same chain do not fetch them again.

EnrollmentSyncAdapter walks user transcripts. It only revisits users
that were never synced, were active in the LMS since their last
enrollment sync, or were last synced longer ago than ``max_age_days``.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from portalsync.core.exceptions import ExternalApiError
from portalsync.orchestration.context import current_sync_context
from portalsync.sync.base import LoggedSyncAdapter
from portalsync.sync.lms import LmsClient, PageCallback
from portalsync.sync.records import SyncRecordStore
from portalsync.tasks.configs import EntitySyncConfig
from portalsync.tasks.constants import DEFAULT_ENROLLMENT_MAX_AGE_DAYS, SyncMode
from portalsync.tasks.tracker import ProgressCallback

logger = logging.getLogger(__name__)


EntityFetcher = Callable[[Optional[datetime], Optional[PageCallback]], Awaitable[list[dict[str, Any]]]]

ENROLLMENT_CURSOR_ENTITY = "enrollment_users"
MAX_TRANSCRIPT_API_ERRORS = 10
USER_ACTIVITY_FIELDS = ("last_active_at", "updated_at")


def user_activity_at(user: dict[str, Any]) -> Optional[datetime]:
    """
    Last LMS activity of a user payload, as a naive local time.

    Reads ``attributes.last_active_at`` and falls back to
    ``attributes.updated_at``. Returns None when neither parses.
    """
    attributes = user.get("attributes") or {}
    for name in USER_ACTIVITY_FIELDS:
        value = attributes.get(name)
        if not value:
            continue
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable {name} on user {user.get('id')}: {value}")
            continue
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone().replace(tzinfo=None)
        return parsed
    return None


class EntitySyncAdapter(LoggedSyncAdapter):
    """
    Sync one LMS entity type into ``sync_records``.

    Args:
        entity: Record entity name and SyncContext key, e.g. ``users``
        fetch: Pulls the list, optionally filtered by a since time
        records: Landing store
        force_full: Never run incrementally
        label: Human name used in progress stages
    """

    def __init__(
        self,
        entity: str,
        fetch: EntityFetcher,
        records: SyncRecordStore,
        force_full: bool = False,
        label: Optional[str] = None,
    ) -> None:
        super().__init__(entity, records)
        self.entity = entity
        self._fetch = fetch
        self._force_full = force_full
        self._label = label or entity

    async def __call__(self, config: EntitySyncConfig, on_progress: ProgressCallback) -> dict[str, Any]:
        mode, since = await self.resolve_mode(config.mode, self._force_full)
        return await self.logged_run(mode, self._sync(mode, since, on_progress))

    async def _sync(
        self,
        mode: SyncMode,
        since: Optional[datetime],
        on_progress: ProgressCallback,
    ) -> dict[str, Any]:
        on_progress(f"Starting {self._label} sync", 0, 0)

        def on_page(page: int, fetched: int) -> None:
            on_progress(f"Fetching {self._label}", fetched, 0, {"page": page})

        ctx = current_sync_context()
        if mode == SyncMode.FULL and ctx is not None:
            items = await ctx.get_all_or_fetch(self.entity, lambda: self._fetch(None, on_page))
        else:
            items = await self._fetch(since, on_page)

        created, updated = await self.store_in_batches(self.entity, items, on_progress, self._label)
        on_progress("Complete", len(items), len(items))
        logger.info(f"{self._label} sync ({mode.value}): {created} created, {updated} updated")
        return {
            "records_processed": len(items),
            "created": created,
            "updated": updated,
            "mode": mode.value,
            "since": since.isoformat() if since else None,
        }


class EnrollmentSyncAdapter(LoggedSyncAdapter):
    """Sync course enrollments from each user's transcript."""

    def __init__(
        self,
        lms: LmsClient,
        records: SyncRecordStore,
        force_full: bool = False,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        super().__init__("enrollments", records)
        self._lms = lms
        self._force_full = force_full
        self._clock = clock

    async def __call__(self, config: EntitySyncConfig, on_progress: ProgressCallback) -> dict[str, Any]:
        mode = SyncMode.FULL if self._force_full else config.mode
        max_age_days = config.max_age_days or DEFAULT_ENROLLMENT_MAX_AGE_DAYS
        return await self.logged_run(mode, self._sync(mode, max_age_days, on_progress))

    async def _load_users(self) -> list[dict[str, Any]]:
        ctx = current_sync_context()
        if ctx is not None and ctx.has_all("users"):
            return ctx.get_all("users") or []
        return await self._records.list_records("users")

    async def select_users(self, mode: SyncMode, max_age_days: int) -> list[str]:
        """Ids of users whose transcripts should be pulled."""
        users = [u for u in await self._load_users() if u.get("id") is not None]
        if mode == SyncMode.FULL:
            return [str(u["id"]) for u in users]

        stale_before = self._clock() - timedelta(days=max_age_days)
        last_enrollment_sync = await self._records.synced_at_map(ENROLLMENT_CURSOR_ENTITY)

        selected = []
        for user in users:
            user_id = str(user["id"])
            synced = last_enrollment_sync.get(user_id)
            if synced is None or synced < stale_before:
                selected.append(user_id)
                continue
            active_at = user_activity_at(user)
            if active_at is not None and active_at > synced:
                selected.append(user_id)
        return selected

    async def _sync(self, mode: SyncMode, max_age_days: int, on_progress: ProgressCallback) -> dict[str, Any]:
        on_progress("Starting enrollments sync", 0, 0)
        user_ids = await self.select_users(mode, max_age_days)
        total = len(user_ids)
        logger.info(f"Enrollment sync ({mode.value}): {total} users to check")

        stats: dict[str, Any] = {
            "records_processed": 0,
            "created": 0,
            "updated": 0,
            "failed": 0,
            "users_checked": total,
            "users_not_found": 0,
            "api_errors": 0,
            "mode": mode.value,
            "errors": [],
        }

        for index, user_id in enumerate(user_ids, start=1):
            try:
                transcripts = await self._lms.list_transcripts(user_id)
            except ExternalApiError as e:
                if e.status_code == 404:
                    stats["users_not_found"] += 1
                    await self._records.upsert_records(ENROLLMENT_CURSOR_ENTITY, [{"id": user_id}])
                    continue
                stats["api_errors"] += 1
                stats["failed"] += 1
                if len(stats["errors"]) < 10:
                    stats["errors"].append({"user_id": user_id, "status": e.status_code, "error": e.message})
                if stats["api_errors"] >= MAX_TRANSCRIPT_API_ERRORS and stats["api_errors"] > stats["records_processed"]:
                    raise ExternalApiError(
                        f"Too many API errors: {e.message}",
                        service=e.service,
                        status_code=e.status_code,
                        endpoint=e.endpoint,
                    ) from e
                continue

            enrollments = [
                {**t, "user_id": user_id}
                for t in transcripts
                if (t.get("attributes") or {}).get("resource_type") == "course"
            ]
            created, updated = await self._records.upsert_records("enrollments", enrollments)
            await self._records.upsert_records(ENROLLMENT_CURSOR_ENTITY, [{"id": user_id}])
            stats["records_processed"] += len(enrollments)
            stats["created"] += created
            stats["updated"] += updated
            on_progress("Syncing enrollments", index, total)

        on_progress("Complete", total, total)
        return stats
