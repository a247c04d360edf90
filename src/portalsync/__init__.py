"""portalsync - scheduled sync engine for a partner portal.

Coordinates periodic, long-running synchronization jobs against an LMS
and a partner CRM: a persistent task catalog, a polling scheduler with a
per-type mutex, crash recovery, and dependency-ordered sync chains.
"""

__version__ = "0.1.0"

from portalsync.core import (
    PortalSyncConfig,
    PortalSyncError,
)
from portalsync.service import SchedulerService
from portalsync.tasks import TaskKind, TaskStatus

__all__ = [
    "__version__",
    # Config
    "PortalSyncConfig",
    # Engine
    "SchedulerService",
    "TaskKind",
    "TaskStatus",
    # Base exception
    "PortalSyncError",
]
