"""
Failure alerting.

Posts system alerts to a chat webhook. The executor sends one alert per
failed run while alerts are enabled; delivery happens in the background
and never affects the run's outcome.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

import httpx

from portalsync.core.config import AlertSettings
from portalsync.core.constants import ALERT_ERROR_MAX_CHARS
from portalsync.core.exceptions import ExternalApiError

logger = logging.getLogger(__name__)


def format_sync_error_alert(
    task_name: str,
    error_message: str,
    duration_seconds: Optional[int],
    timestamp: datetime,
) -> str:
    """Render the alert text for a failed task run."""
    return (
        "*Sync Task Failed*\n\n"
        f"*Task:* {task_name}\n"
        f"*Error:* {error_message[:ALERT_ERROR_MAX_CHARS]}\n"
        f"*Time:* {timestamp.strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"*Duration:* {duration_seconds or 0} seconds\n\n"
        "Please check the sync dashboard for details."
    )


class AlertNotifier:
    """
    Sends system alerts to a webhook.

    Args:
        settings: Webhook URL and timeout
        enabled: Initial state of the alert switch
        transport: Optional httpx transport (tests use MockTransport)
        clock: Source of "now" for alert timestamps
    """

    def __init__(
        self,
        settings: AlertSettings,
        enabled: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._settings = settings
        self.enabled = enabled
        self._transport = transport
        self._clock = clock
        self.sent_count = 0

    def set_enabled(self, enabled: bool) -> None:
        """Turn failure alerts on or off."""
        self.enabled = enabled
        logger.info(f"System alerts {'enabled' if enabled else 'disabled'}")

    async def send_system_alert(self, message: str) -> bool:
        """
        Post a message to the alert webhook.

        Returns:
            False if no webhook is configured, True once delivered

        Raises:
            ExternalApiError: If the webhook rejects the message or is
                unreachable
        """
        url = self._settings.webhook_url
        if not url:
            logger.warning("System alert not sent: no webhook configured")
            return False

        try:
            async with httpx.AsyncClient(
                timeout=self._settings.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json={"text": message})
        except httpx.RequestError as e:
            raise ExternalApiError(f"Alert webhook unreachable: {e}", service="alerts") from e

        if response.status_code >= 400:
            raise ExternalApiError(
                f"Alert webhook returned status {response.status_code}",
                service="alerts",
                status_code=response.status_code,
            )
        self.sent_count += 1
        return True

    async def send_sync_error_alert(
        self,
        task_name: str,
        error_message: str,
        duration_seconds: Optional[int] = None,
    ) -> None:
        """Alert that a task run failed."""
        message = format_sync_error_alert(task_name, error_message, duration_seconds, self._clock())
        if await self.send_system_alert(message):
            logger.info(f"Sent failure alert for {task_name}")
