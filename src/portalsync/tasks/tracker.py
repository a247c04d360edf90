"""
Running task registry and progress tracking.

The registry is the in-memory record of which task types are currently
executing in this process. Presence of a task type is the mutex that
prevents the same type from running twice; the executor is the only
component that adds or removes entries.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from portalsync.tasks.constants import INITIAL_PROGRESS_STAGE

logger = logging.getLogger(__name__)


# =============================================================================
# Progress
# =============================================================================

@dataclass
class TaskProgress:
    """Latest progress reported by a running task."""

    stage: str = INITIAL_PROGRESS_STAGE
    current: int = 0
    total: int = 0
    details: Optional[dict[str, Any]] = None
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def percent(self) -> Optional[float]:
        """Completion percentage, when a total is known."""
        if self.total <= 0:
            return None
        return round(min(self.current / self.total, 1.0) * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        """Convert progress to dictionary."""
        return {
            "stage": self.stage,
            "current": self.current,
            "total": self.total,
            "percent": self.percent,
            "details": self.details,
            "updated_at": self.updated_at.isoformat(),
        }


class ProgressCallback(Protocol):
    """Signature adapters use to report progress."""

    def __call__(
        self,
        stage: str,
        current: int = 0,
        total: int = 0,
        details: Optional[dict[str, Any]] = None,
    ) -> None: ...


@dataclass
class RunningTaskInfo:
    """A registry entry for one executing task type."""

    task_type: str
    started_at: datetime
    progress: TaskProgress = field(default_factory=TaskProgress)

    def running_seconds(self, now: datetime) -> int:
        """Whole seconds since the run started."""
        return max(0, int((now - self.started_at).total_seconds()))

    def to_dict(self, now: datetime) -> dict[str, Any]:
        """Convert to the status surface shape."""
        return {
            "type": self.task_type,
            "started_at": self.started_at.isoformat(),
            "running_seconds": self.running_seconds(now),
            "progress": self.progress.to_dict(),
        }


# =============================================================================
# Registry
# =============================================================================

class RunningTaskRegistry:
    """
    Process-local map of task type to running task info.

    Mutations are plain dict operations performed between awaits, so no
    lock is needed inside a single event loop.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock
        self._running: dict[str, RunningTaskInfo] = {}

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._running

    def __len__(self) -> int:
        return len(self._running)

    def is_running(self, task_type: str) -> bool:
        """Check whether a task type is registered."""
        return task_type in self._running

    def register(self, task_type: str, started_at: Optional[datetime] = None) -> RunningTaskInfo:
        """
        Register a task type as running.

        Raises:
            KeyError: If the type is already registered
        """
        if task_type in self._running:
            raise KeyError(task_type)
        info = RunningTaskInfo(
            task_type=task_type,
            started_at=started_at or self._clock(),
            progress=TaskProgress(updated_at=started_at or self._clock()),
        )
        self._running[task_type] = info
        return info

    def unregister(self, task_type: str) -> None:
        """Remove a task type. Missing entries are ignored."""
        self._running.pop(task_type, None)

    def get(self, task_type: str) -> Optional[RunningTaskInfo]:
        """Get the entry for a task type."""
        return self._running.get(task_type)

    def update_progress(
        self,
        task_type: str,
        stage: str,
        current: int = 0,
        total: int = 0,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Replace the progress of a running task; no-op if not running."""
        info = self._running.get(task_type)
        if info is None:
            return
        info.progress = TaskProgress(
            stage=stage,
            current=current,
            total=total,
            details=details,
            updated_at=self._clock(),
        )
        logger.debug(f"{task_type}: {stage} ({current}/{total})")

    def progress_callback(self, task_type: str) -> ProgressCallback:
        """Bind ``update_progress`` to one task type for an adapter."""

        def on_progress(
            stage: str,
            current: int = 0,
            total: int = 0,
            details: Optional[dict[str, Any]] = None,
        ) -> None:
            self.update_progress(task_type, stage, current, total, details)

        return on_progress

    def snapshot(self) -> list[dict[str, Any]]:
        """Status view of every running task."""
        now = self._clock()
        return [info.to_dict(now) for info in self._running.values()]

    def task_types(self) -> list[str]:
        """Currently registered task types."""
        return list(self._running)
