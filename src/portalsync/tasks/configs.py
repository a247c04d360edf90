"""
Typed task configuration.

Each task kind owns a pydantic model for its ``config`` column. Raw JSON
from the store is validated here, before a run starts and whenever the
configuration is updated, so adapters only ever see well-formed values.
"""

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from portalsync.core.exceptions import TaskConfigError
from portalsync.tasks.constants import (
    DEFAULT_ENROLLMENT_MAX_AGE_DAYS,
    DEFAULT_KEEP_LOGS_DAYS,
    SyncMode,
    TaskKind,
)


LmsEntityName = Literal["users", "groups", "courses", "npcu", "enrollments"]


class _TaskConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class EntitySyncConfig(_TaskConfig):
    """Configuration for a single-entity LMS sync."""

    mode: SyncMode = Field(SyncMode.INCREMENTAL, description="incremental or full")
    max_age_days: int | None = Field(
        None,
        ge=1,
        alias="maxAgeDays",
        description="Enrollments: days before a synced user is revisited regardless of activity",
    )


class LmsSyncConfig(_TaskConfig):
    """Configuration for the composite LMS sync."""

    sync_types: list[LmsEntityName] = Field(
        default_factory=lambda: ["users", "groups", "courses"],
        min_length=1,
    )
    mode: SyncMode = Field(SyncMode.INCREMENTAL)
    enrollment_max_age_days: int = Field(DEFAULT_ENROLLMENT_MAX_AGE_DAYS, ge=1)


class CrmSyncConfig(_TaskConfig):
    """Configuration for the partner CRM sync."""

    mode: SyncMode = Field(SyncMode.INCREMENTAL)


class CleanupConfig(_TaskConfig):
    """Configuration for the log retention task."""

    keep_logs_days: int = Field(DEFAULT_KEEP_LOGS_DAYS, ge=1)


class DailyChainConfig(_TaskConfig):
    """Options for the daily sync chain."""

    include_crm: bool = True
    include_cleanup: bool = True
    full: bool = False


TaskConfig = Union[
    EntitySyncConfig,
    LmsSyncConfig,
    CrmSyncConfig,
    CleanupConfig,
    DailyChainConfig,
]


CONFIG_MODELS: dict[TaskKind, type[_TaskConfig]] = {
    **{kind: EntitySyncConfig for kind in TaskKind.entity_kinds()},
    TaskKind.LMS_SYNC: LmsSyncConfig,
    TaskKind.CRM_SYNC: CrmSyncConfig,
    TaskKind.CLEANUP: CleanupConfig,
    TaskKind.DAILY_SYNC_CHAIN: DailyChainConfig,
}


def parse_task_config(kind: TaskKind, raw: dict[str, Any] | None) -> TaskConfig:
    """
    Validate a raw config mapping against the model for ``kind``.

    Args:
        kind: Task kind the config belongs to
        raw: Decoded JSON config (None is treated as empty)

    Returns:
        The validated config model

    Raises:
        TaskConfigError: If the config does not match the model
    """
    model = CONFIG_MODELS[kind]
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        errors = e.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(p) for p in first.get("loc", ())) or "config"
        raise TaskConfigError(
            f"Invalid config for {kind.value}: {location}: {first.get('msg', 'invalid')}",
            task_type=kind.value,
            errors=errors,
        ) from e


def config_to_dict(config: TaskConfig) -> dict[str, Any]:
    """Serialize a validated config for storage."""
    return config.model_dump(mode="json", exclude_none=True)
