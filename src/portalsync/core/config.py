"""portalsync configuration loading and validation."""

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Self

from portalsync.core.constants import (
    CONFIG_FILE_NAME,
    DEFAULT_CHECK_INTERVAL_SECONDS,
    DEFAULT_CRM_BASE_URL,
    DEFAULT_DATABASE_PATH,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_LMS_BASE_URL,
    DEFAULT_PAGE_DELAY_SECONDS,
    DEFAULT_PAGE_SIZE,
    DEFAULT_RATE_LIMIT_WAIT_SECONDS,
    DEFAULT_STARTUP_DELAY_SECONDS,
    ENV_ALERT_WEBHOOK_URL,
    ENV_CRM_API_KEY,
    ENV_CRM_BASE_URL,
    ENV_CRM_TENANT_ID,
    ENV_DATABASE_PATH,
    ENV_ENABLE_SCHEDULER,
    ENV_LMS_API_KEY,
    ENV_LMS_BASE_URL,
    ENV_NODE_ENV,
    ENV_PORTALSYNC_ENV,
    PRODUCTION_ENV_VALUE,
)
from portalsync.core.exceptions import ConfigurationError


def is_production_environment(environ: Mapping[str, str] | None = None) -> bool:
    """Return True when the environment enables scheduled execution.

    Scheduling is on in production deployments, or anywhere that sets
    ``ENABLE_SCHEDULER=true`` explicitly.
    """
    env = os.environ if environ is None else environ
    if env.get(ENV_PORTALSYNC_ENV, "").lower() == PRODUCTION_ENV_VALUE:
        return True
    if env.get(ENV_NODE_ENV, "").lower() == PRODUCTION_ENV_VALUE:
        return True
    return env.get(ENV_ENABLE_SCHEDULER, "").lower() == "true"


@dataclass(frozen=True)
class SchedulerSettings:
    """Scheduler loop configuration."""

    enabled: bool = False
    check_interval_seconds: int = DEFAULT_CHECK_INTERVAL_SECONDS
    startup_delay_seconds: float = DEFAULT_STARTUP_DELAY_SECONDS
    log_level: str = "info"


@dataclass(frozen=True)
class DatabaseSettings:
    """Relational store configuration."""

    path: str = DEFAULT_DATABASE_PATH


@dataclass(frozen=True)
class LmsSettings:
    """LMS API client configuration."""

    base_url: str = DEFAULT_LMS_BASE_URL
    api_key: str = ""
    page_size: int = DEFAULT_PAGE_SIZE
    page_delay_seconds: float = DEFAULT_PAGE_DELAY_SECONDS
    rate_limit_wait_seconds: float = DEFAULT_RATE_LIMIT_WAIT_SECONDS
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS


@dataclass(frozen=True)
class CrmSettings:
    """Partner CRM API client configuration."""

    base_url: str = DEFAULT_CRM_BASE_URL
    api_key: str = ""
    tenant_id: str = ""
    page_size: int = DEFAULT_PAGE_SIZE
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS


@dataclass(frozen=True)
class AlertSettings:
    """Failure alert configuration.

    ``enabled`` of None means "follow the scheduler enable gate".
    """

    enabled: bool | None = None
    webhook_url: str = ""
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class PortalSyncConfig:
    """Complete portalsync configuration."""

    version: str = "1.0"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    lms: LmsSettings = field(default_factory=LmsSettings)
    crm: CrmSettings = field(default_factory=CrmSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)

    @property
    def system_alerts_enabled(self) -> bool:
        """Effective default for failure alerts."""
        if self.alerts.enabled is None:
            return self.scheduler.enabled
        return self.alerts.enabled

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create config from dictionary."""
        try:
            return cls(
                version=data.get("version", "1.0"),
                scheduler=SchedulerSettings(**data.get("scheduler", {})),
                database=DatabaseSettings(**data.get("database", {})),
                lms=LmsSettings(**data.get("lms", {})),
                crm=CrmSettings(**data.get("crm", {})),
                alerts=AlertSettings(**data.get("alerts", {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration values: {e}") from e

    @classmethod
    def load(cls, path: Path | None = None) -> Self:
        """Load configuration from file or use defaults."""
        config_path = Path(path) if path else Path.cwd() / CONFIG_FILE_NAME

        if not config_path.exists():
            if path is not None:
                raise ConfigurationError(
                    "Config file not found",
                    details={"path": str(config_path)},
                )
            return cls()

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Invalid JSON in config file: {e}",
                details={"path": str(config_path)},
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationError(
                "Config file must contain a JSON object",
                details={"path": str(config_path)},
            )
        return cls.from_dict(data)

    def with_environment(self, environ: Mapping[str, str] | None = None) -> Self:
        """Overlay environment variables on top of this config.

        The enable gate is always taken from the environment; secrets and
        endpoints only override the file values when set.
        """
        env = os.environ if environ is None else environ

        scheduler = replace(self.scheduler, enabled=is_production_environment(env))
        database = self.database
        if env.get(ENV_DATABASE_PATH):
            database = replace(database, path=env[ENV_DATABASE_PATH])

        lms = self.lms
        if env.get(ENV_LMS_API_KEY):
            lms = replace(lms, api_key=env[ENV_LMS_API_KEY])
        if env.get(ENV_LMS_BASE_URL):
            lms = replace(lms, base_url=env[ENV_LMS_BASE_URL])

        crm = self.crm
        if env.get(ENV_CRM_API_KEY):
            crm = replace(crm, api_key=env[ENV_CRM_API_KEY])
        if env.get(ENV_CRM_TENANT_ID):
            crm = replace(crm, tenant_id=env[ENV_CRM_TENANT_ID])
        if env.get(ENV_CRM_BASE_URL):
            crm = replace(crm, base_url=env[ENV_CRM_BASE_URL])

        alerts = self.alerts
        if env.get(ENV_ALERT_WEBHOOK_URL):
            alerts = replace(alerts, webhook_url=env[ENV_ALERT_WEBHOOK_URL])

        return replace(
            self,
            scheduler=scheduler,
            database=database,
            lms=lms,
            crm=crm,
            alerts=alerts,
        )

    @classmethod
    def from_env(cls, path: Path | None = None) -> Self:
        """Load the config file (if any) and apply the environment."""
        return cls.load(path).with_environment()

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary, omitting secrets."""
        return {
            "version": self.version,
            "scheduler": {
                "enabled": self.scheduler.enabled,
                "check_interval_seconds": self.scheduler.check_interval_seconds,
                "startup_delay_seconds": self.scheduler.startup_delay_seconds,
                "log_level": self.scheduler.log_level,
            },
            "database": {
                "path": self.database.path,
            },
            "lms": {
                "base_url": self.lms.base_url,
                "page_size": self.lms.page_size,
                "page_delay_seconds": self.lms.page_delay_seconds,
                "rate_limit_wait_seconds": self.lms.rate_limit_wait_seconds,
                "timeout_seconds": self.lms.timeout_seconds,
            },
            "crm": {
                "base_url": self.crm.base_url,
                "tenant_id": self.crm.tenant_id,
                "page_size": self.crm.page_size,
                "timeout_seconds": self.crm.timeout_seconds,
            },
            "alerts": {
                "enabled": self.alerts.enabled,
                "webhook_url": self.alerts.webhook_url,
                "timeout_seconds": self.alerts.timeout_seconds,
            },
        }
