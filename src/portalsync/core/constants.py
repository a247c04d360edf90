"""portalsync system constants and default values."""

from pathlib import Path
from typing import Final


# Environment variables
ENV_PORTALSYNC_ENV: Final[str] = "PORTALSYNC_ENV"
ENV_NODE_ENV: Final[str] = "NODE_ENV"
ENV_ENABLE_SCHEDULER: Final[str] = "ENABLE_SCHEDULER"
ENV_DATABASE_PATH: Final[str] = "PORTALSYNC_DATABASE"
ENV_LMS_API_KEY: Final[str] = "LMS_API_KEY"
ENV_LMS_BASE_URL: Final[str] = "LMS_BASE_URL"
ENV_CRM_API_KEY: Final[str] = "CRM_API_KEY"
ENV_CRM_TENANT_ID: Final[str] = "CRM_TENANT_ID"
ENV_CRM_BASE_URL: Final[str] = "CRM_BASE_URL"
ENV_ALERT_WEBHOOK_URL: Final[str] = "ALERT_WEBHOOK_URL"

PRODUCTION_ENV_VALUE: Final[str] = "production"

# Files
CONFIG_FILE_NAME: Final[str] = "portalsync.config.json"
DEFAULT_DATABASE_PATH: Final[str] = "portalsync.db"
DEFAULT_TASKS_FILE: Final[Path] = Path(__file__).resolve().parent.parent / "data" / "default_tasks.yaml"

# Scheduler
DEFAULT_CHECK_INTERVAL_SECONDS: Final[int] = 60
DEFAULT_STARTUP_DELAY_SECONDS: Final[float] = 5.0

# External APIs
DEFAULT_LMS_BASE_URL: Final[str] = "https://api.northpass.com"
DEFAULT_CRM_BASE_URL: Final[str] = "https://prod.impartner.live"
DEFAULT_PAGE_SIZE: Final[int] = 100
DEFAULT_PAGE_DELAY_SECONDS: Final[float] = 0.125
DEFAULT_RATE_LIMIT_WAIT_SECONDS: Final[float] = 2.0
DEFAULT_HTTP_TIMEOUT_SECONDS: Final[float] = 30.0

# Alerts
ALERT_ERROR_MAX_CHARS: Final[int] = 500

# Sync context
SYNC_CONTEXT_TTL_MINUTES: Final[int] = 60
