"""Core configuration, constants, errors, and database access."""

from portalsync.core.config import (
    AlertSettings,
    CrmSettings,
    DatabaseSettings,
    LmsSettings,
    PortalSyncConfig,
    SchedulerSettings,
    is_production_environment,
)
from portalsync.core.database import Database
from portalsync.core.exceptions import (
    ChainAbortedError,
    ChainDefinitionError,
    ConfigurationError,
    ExternalApiError,
    MutexViolationError,
    PortalSyncError,
    StoreError,
    TaskConfigError,
    TaskExecutionError,
    TaskNotFoundError,
    UnknownTaskKindError,
)

__all__ = [
    # Config
    "PortalSyncConfig",
    "SchedulerSettings",
    "DatabaseSettings",
    "LmsSettings",
    "CrmSettings",
    "AlertSettings",
    "is_production_environment",
    # Database
    "Database",
    # Exceptions
    "PortalSyncError",
    "ConfigurationError",
    "StoreError",
    "TaskNotFoundError",
    "MutexViolationError",
    "TaskConfigError",
    "UnknownTaskKindError",
    "TaskExecutionError",
    "ChainDefinitionError",
    "ChainAbortedError",
    "ExternalApiError",
]
