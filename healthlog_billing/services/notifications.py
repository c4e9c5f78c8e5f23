"""
Best-effort templated email notifications via the EmailJS REST API.

Notifications are never part of the entitlement contract: every failure is
logged and swallowed so it cannot fail or delay a webhook acknowledgement.
"""

from typing import Any, Protocol

import httpx
import structlog

from healthlog_billing.config import EmailJSConfig
from healthlog_billing.models.subscription import Notification, NotificationKind

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def dispatch(self, notification: Notification) -> bool:
        """Send a notification. Returns False when skipped or failed; never raises."""


class EmailJSNotifier:
    """Sends reconciler notifications through EmailJS templates."""

    def __init__(self, config: EmailJSConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)

    def template_for(self, kind: NotificationKind) -> str:
        templates = {
            NotificationKind.WELCOME: self.config.template_welcome,
            NotificationKind.UPGRADE: self.config.template_upgrade,
            NotificationKind.DOWNGRADE: self.config.template_downgrade,
            NotificationKind.CANCELLED: self.config.template_cancelled,
            NotificationKind.PAYMENT_FAILED: self.config.template_payment_failed,
        }
        return templates[kind]

    async def send_templated_message(
        self, recipient: str, template_id: str, variables: dict[str, Any]
    ) -> None:
        """POST one templated email. Raises httpx errors on failure."""
        payload: dict[str, Any] = {
            "service_id": self.config.service_id,
            "template_id": template_id,
            "user_id": self.config.public_key,
            "template_params": {"to_email": recipient, **variables},
        }
        if self.config.private_key:
            payload["accessToken"] = self.config.private_key

        response = await self._client.post(self.config.api_url, json=payload)
        response.raise_for_status()

    async def dispatch(self, notification: Notification) -> bool:
        template_id = self.template_for(notification.kind)
        if not self.config.enabled or not template_id:
            logger.info(
                "notification_skipped",
                kind=notification.kind.value,
                user_id=notification.user_id,
                detail="EmailJS not configured",
            )
            return False

        variables = {
            "to_name": notification.recipient_name,
            "user_name": notification.recipient_name,
            **notification.variables,
        }
        try:
            await self.send_templated_message(
                notification.recipient_email, template_id, variables
            )
        except Exception as e:
            logger.warning(
                "notification_failed",
                kind=notification.kind.value,
                user_id=notification.user_id,
                error=str(e),
            )
            return False

        logger.info(
            "notification_sent",
            kind=notification.kind.value,
            user_id=notification.user_id,
            template_id=template_id,
        )
        return True

    async def close(self) -> None:
        await self._client.aclose()
