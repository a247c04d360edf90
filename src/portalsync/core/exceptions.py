"""portalsync custom exception hierarchy."""

from typing import Any


class PortalSyncError(Exception):
    """Base exception for all portalsync errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class ConfigurationError(PortalSyncError):
    """Raised when configuration is invalid or missing."""

    pass


class StoreError(PortalSyncError):
    """Raised when the relational store cannot be used."""

    pass


# -----------------------------------------------------------------------------
# Task lifecycle errors
# -----------------------------------------------------------------------------


class TaskNotFoundError(PortalSyncError):
    """Raised when no task definition exists for a task type."""

    def __init__(self, task_type: str) -> None:
        super().__init__("Task not found", details={"task_type": task_type})
        self.task_type = task_type


class MutexViolationError(PortalSyncError):
    """Raised when a task type is dispatched while it is already running."""

    def __init__(self, task_type: str) -> None:
        super().__init__("Task already running", details={"task_type": task_type})
        self.task_type = task_type


class TaskConfigError(PortalSyncError):
    """Raised when a task's configuration does not match its kind."""

    def __init__(
        self,
        message: str,
        task_type: str | None = None,
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if task_type:
            details["task_type"] = task_type
        if errors:
            details["errors"] = len(errors)
        super().__init__(message, details)
        self.task_type = task_type
        self.errors = errors or []


class UnknownTaskKindError(PortalSyncError):
    """Raised when no adapter is registered for a task type."""

    def __init__(self, task_type: str) -> None:
        super().__init__(f"Unknown task type: {task_type}", details={"task_type": task_type})
        self.task_type = task_type


class TaskExecutionError(PortalSyncError):
    """Raised when a dispatched task fails inside its adapter."""

    def __init__(
        self,
        task_type: str,
        error_message: str,
        duration_seconds: int | None = None,
    ) -> None:
        details: dict[str, Any] = {"task_type": task_type}
        if duration_seconds is not None:
            details["duration_seconds"] = duration_seconds
        super().__init__(error_message, details)
        self.task_type = task_type
        self.error_message = error_message
        self.duration_seconds = duration_seconds


# -----------------------------------------------------------------------------
# Chain errors
# -----------------------------------------------------------------------------


class ChainDefinitionError(PortalSyncError):
    """Raised when a chain's steps do not form a valid plan."""

    pass


class ChainAbortedError(PortalSyncError):
    """Raised when a required chain step fails."""

    def __init__(self, step_name: str, error_message: str, run: Any = None) -> None:
        super().__init__(
            f"Chain aborted at required step '{step_name}': {error_message}",
            details={"step": step_name},
        )
        self.step_name = step_name
        self.error_message = error_message
        self.run = run


# -----------------------------------------------------------------------------
# External service errors
# -----------------------------------------------------------------------------


class ExternalApiError(PortalSyncError):
    """Raised when an external API call fails."""

    def __init__(
        self,
        message: str,
        service: str,
        status_code: int | None = None,
        endpoint: str | None = None,
        body: str | None = None,
    ) -> None:
        details: dict[str, Any] = {"service": service}
        if status_code is not None:
            details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        super().__init__(message, details)
        self.service = service
        self.status_code = status_code
        self.endpoint = endpoint
        self.body = body
