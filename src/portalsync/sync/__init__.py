"""
portalsync Sync Adapters Module.

External API clients and the adapters that turn their data into
``sync_records`` rows.

Public API:
-----------

Clients:
    LmsClient - LMS REST API
    CrmClient - Partner CRM object API

Adapters:
    EntitySyncAdapter - One LMS list endpoint
    EnrollmentSyncAdapter - User transcripts
    CrmSyncAdapter - Partner accounts and contacts
    LmsSyncAdapter - Several LMS entities in one task
    CleanupAdapter - Log retention

Storage:
    SyncRecordStore - Synced payloads and sync logs

Wiring:
    build_default_registry - Adapter registry for built-in kinds
"""

from portalsync.sync.crm import CrmClient
from portalsync.sync.entities import EnrollmentSyncAdapter, EntitySyncAdapter
from portalsync.sync.lms import LmsClient, lms_error
from portalsync.sync.maintenance import CleanupAdapter, LmsSyncAdapter
from portalsync.sync.partners import CrmSyncAdapter
from portalsync.sync.records import SyncLogStatus, SyncRecordStore
from portalsync.sync.registry import build_default_registry

__all__ = [
    # Clients
    "LmsClient",
    "CrmClient",
    "lms_error",
    # Adapters
    "EntitySyncAdapter",
    "EnrollmentSyncAdapter",
    "CrmSyncAdapter",
    "LmsSyncAdapter",
    "CleanupAdapter",
    # Storage
    "SyncRecordStore",
    "SyncLogStatus",
    # Wiring
    "build_default_registry",
]
