"""
Task data models.

This module defines the persisted task definition and run history
records, along with the next-run computation used after every run.
"""

import json
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Optional

from portalsync.tasks.constants import RETRY_CAP_MINUTES, RunStatus, TaskStatus


# =============================================================================
# Timestamp Helpers
# =============================================================================

def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage."""
    return value.isoformat() if value is not None else None


def from_db_time(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _load_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


# =============================================================================
# Schedule Computation
# =============================================================================

def parse_schedule_time(value: str) -> time:
    """Parse an ``HH:MM`` or ``HH:MM:SS`` schedule time."""
    parts = value.split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid schedule_time: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    second = int(parts[2]) if len(parts) == 3 else 0
    return time(hour, minute, second)


def sunday_based_weekday(day: date) -> int:
    """Weekday number with Sunday as 0, matching ``schedule_day``."""
    return (day.weekday() + 1) % 7


def compute_next_run_at(
    interval_minutes: int,
    now: datetime,
    schedule_day: Optional[int] = None,
    schedule_time: Optional[str] = None,
) -> datetime:
    """
    Compute when a task should next run after a completed run.

    With both ``schedule_day`` (0 = Sunday ... 6 = Saturday) and
    ``schedule_time`` set, returns the next occurrence of that weekday and
    time strictly after ``now``. Otherwise returns ``now`` plus the
    interval.

    Args:
        interval_minutes: Fallback interval
        now: Reference time
        schedule_day: Weekday of the calendar slot
        schedule_time: Time of day of the calendar slot

    Returns:
        The next run time
    """
    if schedule_day is None or not schedule_time:
        return now + timedelta(minutes=interval_minutes)

    if not 0 <= schedule_day <= 6:
        raise ValueError(f"schedule_day must be between 0 and 6, got {schedule_day}")

    slot_time = parse_schedule_time(schedule_time)
    days_ahead = (schedule_day - sunday_based_weekday(now.date())) % 7
    candidate = datetime.combine(now.date() + timedelta(days=days_ahead), slot_time, tzinfo=now.tzinfo)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


def compute_retry_at(interval_minutes: int, now: datetime) -> datetime:
    """Next attempt after a failure: never later than the retry cap."""
    return now + timedelta(minutes=min(interval_minutes, RETRY_CAP_MINUTES))


# =============================================================================
# Task Definition
# =============================================================================

@dataclass
class TaskDefinition:
    """A schedulable task, one row per task type."""

    task_type: str
    task_name: str
    interval_minutes: int
    enabled: bool = False
    schedule_day: Optional[int] = None
    schedule_time: Optional[str] = None
    config: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    last_status: TaskStatus = TaskStatus.IDLE
    last_error: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_duration_seconds: Optional[int] = None
    run_count: int = 0
    fail_count: int = 0
    next_run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Aggregates filled by TaskStore.get_all_tasks
    total_runs: Optional[int] = None
    last_success: Optional[datetime] = None

    @property
    def has_calendar_schedule(self) -> bool:
        """Whether the task runs on a weekly slot instead of an interval."""
        return self.schedule_day is not None and bool(self.schedule_time)

    def next_run_after(self, now: datetime) -> datetime:
        """Next run time after a successful run finishing at ``now``."""
        return compute_next_run_at(
            self.interval_minutes,
            now,
            schedule_day=self.schedule_day,
            schedule_time=self.schedule_time,
        )

    def retry_after(self, now: datetime) -> datetime:
        """Next run time after a failed run finishing at ``now``."""
        return compute_retry_at(self.interval_minutes, now)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TaskDefinition":
        """Create a definition from a database row."""
        last_success = row.get("last_success")
        return cls(
            id=row.get("id"),
            task_type=row["task_type"],
            task_name=row["task_name"],
            enabled=bool(row.get("enabled", 0)),
            interval_minutes=int(row["interval_minutes"]),
            schedule_day=row.get("schedule_day"),
            schedule_time=row.get("schedule_time"),
            config=_load_json(row.get("config"), {}),
            last_status=TaskStatus(row.get("last_status") or TaskStatus.IDLE.value),
            last_error=row.get("last_error"),
            last_run_at=from_db_time(row.get("last_run_at")),
            last_duration_seconds=row.get("last_duration_seconds"),
            run_count=int(row.get("run_count") or 0),
            fail_count=int(row.get("fail_count") or 0),
            next_run_at=from_db_time(row.get("next_run_at")),
            created_at=from_db_time(row.get("created_at")),
            updated_at=from_db_time(row.get("updated_at")),
            total_runs=row.get("total_runs"),
            last_success=from_db_time(last_success),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskDefinition":
        """Create a catalog definition from a plain mapping (seed files)."""
        return cls(
            task_type=data["task_type"],
            task_name=data.get("task_name", data["task_type"]),
            interval_minutes=int(data["interval_minutes"]),
            enabled=bool(data.get("enabled", False)),
            schedule_day=data.get("schedule_day"),
            schedule_time=data.get("schedule_time"),
            config=dict(data.get("config") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result = {
            "id": self.id,
            "task_type": self.task_type,
            "task_name": self.task_name,
            "enabled": self.enabled,
            "interval_minutes": self.interval_minutes,
            "schedule_day": self.schedule_day,
            "schedule_time": self.schedule_time,
            "config": self.config,
            "last_status": self.last_status.value,
            "last_error": self.last_error,
            "last_run_at": to_db_time(self.last_run_at),
            "last_duration_seconds": self.last_duration_seconds,
            "run_count": self.run_count,
            "fail_count": self.fail_count,
            "next_run_at": to_db_time(self.next_run_at),
            "created_at": to_db_time(self.created_at),
            "updated_at": to_db_time(self.updated_at),
        }
        if self.total_runs is not None:
            result["total_runs"] = self.total_runs
            result["last_success"] = to_db_time(self.last_success)
        return result


# =============================================================================
# Run History
# =============================================================================

@dataclass
class TaskRunHistory:
    """One execution attempt of a task."""

    task_type: str
    started_at: datetime
    status: RunStatus = RunStatus.RUNNING
    id: Optional[int] = None
    task_id: Optional[int] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    records_processed: Optional[int] = None
    result_summary: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TaskRunHistory":
        """Create a history entry from a database row."""
        return cls(
            id=row.get("id"),
            task_id=row.get("task_id"),
            task_type=row["task_type"],
            started_at=from_db_time(row["started_at"]),
            completed_at=from_db_time(row.get("completed_at")),
            status=RunStatus(row["status"]),
            duration_seconds=row.get("duration_seconds"),
            records_processed=row.get("records_processed"),
            result_summary=_load_json(row.get("result_summary"), None),
            error_message=row.get("error_message"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "task_id": self.task_id,
            "task_type": self.task_type,
            "started_at": to_db_time(self.started_at),
            "completed_at": to_db_time(self.completed_at),
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "records_processed": self.records_processed,
            "result_summary": self.result_summary,
            "error_message": self.error_message,
        }
