"""Notification utilities for terminal sync failures."""

import logging
from typing import Optional

import httpx

from shared.config import get_env

logger = logging.getLogger(__name__)


class NotificationService:
    """Forwards terminal sync failures to a webhook when enabled."""

    def __init__(self, enabled: Optional[bool] = None, webhook_url: Optional[str] = None):
        """Initialize notification service from arguments or environment."""
        if enabled is None:
            enabled = get_env("ENABLE_NOTIFICATIONS", "false").lower() == "true"
        self.notification_enabled = enabled
        self.notification_webhook = webhook_url or get_env("NOTIFICATION_WEBHOOK_URL")

    async def send_failure_notification(
        self,
        operation: str,
        error_message: str,
        task_id: Optional[str] = None,
        context: Optional[dict] = None
    ) -> bool:
        """
        Report a failed refresh or a rolled back mutation.

        Delivery problems are logged and never raised; the failure itself is
        already recorded as the sync service's last error.

        Args:
            operation: Engine operation that failed (refresh, start, ...)
            error_message: Human-readable failure description
            task_id: Affected task, for mutations
            context: Optional additional context

        Returns:
            True when a webhook accepted the notification
        """
        if not self.notification_enabled:
            logger.debug(f"Notifications disabled, skipping {operation} failure")
            return False

        notification_message = (
            f"Task sync failure\n"
            f"Operation: {operation}\n"
            f"Error: {error_message}\n"
        )
        if task_id:
            notification_message += f"Task ID: {task_id}\n"
        if context:
            notification_message += f"Context: {context}\n"

        logger.warning(f"SYNC FAILURE NOTIFICATION: {notification_message}")

        if not self.notification_webhook:
            return False

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.notification_webhook,
                    json={
                        "text": notification_message,
                        "operation": operation,
                        "task_id": task_id,
                        "error": error_message
                    },
                    timeout=10.0
                )
                response.raise_for_status()
            logger.info(f"Notification sent for {operation} failure")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send notification: {e}")
            return False
