"""
Task system constants and enumerations.

This module defines the lifecycle states, the catalogue of task kinds,
and the timing constants used by the scheduler and executor.
"""

from enum import Enum
from typing import Final


# =============================================================================
# Status Enumerations
# =============================================================================

class TaskStatus(str, Enum):
    """Last known status of a task definition."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        """Check if this status ends a run."""
        return self in (TaskStatus.SUCCESS, TaskStatus.FAILED)


class RunStatus(str, Enum):
    """Status of a single run history entry."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncMode(str, Enum):
    """How much of an external dataset a sync pulls."""

    INCREMENTAL = "incremental"
    FULL = "full"


# =============================================================================
# Task Kinds
# =============================================================================

class TaskKind(str, Enum):
    """Every task type the engine knows how to dispatch."""

    SYNC_USERS = "sync_users"
    SYNC_USERS_FULL = "sync_users_full"
    SYNC_GROUPS = "sync_groups"
    SYNC_GROUPS_FULL = "sync_groups_full"
    SYNC_COURSES = "sync_courses"
    SYNC_COURSES_FULL = "sync_courses_full"
    SYNC_NPCU = "sync_npcu"
    SYNC_ENROLLMENTS = "sync_enrollments"
    SYNC_ENROLLMENTS_FULL = "sync_enrollments_full"
    LMS_SYNC = "lms_sync"
    CRM_SYNC = "crm_sync"
    CLEANUP = "cleanup"
    DAILY_SYNC_CHAIN = "daily_sync_chain"

    @classmethod
    def entity_kinds(cls) -> tuple["TaskKind", ...]:
        """Kinds that sync a single LMS entity type."""
        return (
            cls.SYNC_USERS,
            cls.SYNC_USERS_FULL,
            cls.SYNC_GROUPS,
            cls.SYNC_GROUPS_FULL,
            cls.SYNC_COURSES,
            cls.SYNC_COURSES_FULL,
            cls.SYNC_NPCU,
            cls.SYNC_ENROLLMENTS,
            cls.SYNC_ENROLLMENTS_FULL,
        )

    @property
    def forces_full(self) -> bool:
        """Whether this kind always pulls the complete dataset."""
        return self.value.endswith("_full") or self is TaskKind.SYNC_NPCU

    @classmethod
    def parse(cls, value: str) -> "TaskKind":
        """Convert a stored task_type to a kind. Raises ValueError."""
        return cls(value)


# =============================================================================
# Timing
# =============================================================================

# Failed runs retry after min(interval_minutes, RETRY_CAP_MINUTES)
RETRY_CAP_MINUTES: Final[int] = 30

DEFAULT_HISTORY_LIMIT: Final[int] = 20
DEFAULT_ENROLLMENT_MAX_AGE_DAYS: Final[int] = 7
DEFAULT_KEEP_LOGS_DAYS: Final[int] = 30


# =============================================================================
# Messages
# =============================================================================

RECOVERY_ERROR_MESSAGE: Final[str] = "Server restart during execution"
INITIAL_PROGRESS_STAGE: Final[str] = "Initializing"


# =============================================================================
# Storage
# =============================================================================

SCHEDULED_TASKS_TABLE: Final[str] = "scheduled_tasks"
TASK_RUN_HISTORY_TABLE: Final[str] = "task_run_history"
