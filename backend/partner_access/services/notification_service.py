"""
Owner Notification Dispatch.

WHAT: Sends best-effort notifications to organization owners about billing
and lifecycle events (payment failed, plan changed, application approved).

WHY: Notifications are supplementary. They are requested only after the
state change has committed, and a delivery failure must never undo or
fail that change.

HOW: A NotificationDispatcher wraps one channel. Channels raise
NotificationDeliveryError; the dispatcher logs and swallows every failure
and reports delivery as a bool.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from partner_access.core.config import settings
from partner_access.core.exceptions import NotificationDeliveryError

logger = logging.getLogger(__name__)


class NotificationTemplate(str, Enum):
    """Kinds of owner notification."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    PLAN_CHANGED = "plan_changed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"
    TRIAL_WILL_END = "trial_will_end"
    INVOICE_UPCOMING = "invoice_upcoming"
    INVOICE_FINALIZED = "invoice_finalized"
    ORGANIZATION_APPROVED = "organization_approved"
    ORGANIZATION_REJECTED = "organization_rejected"
    ORGANIZATION_SUSPENDED = "organization_suspended"
    ORGANIZATION_REINSTATED = "organization_reinstated"
    ORGANIZATION_ARCHIVED = "organization_archived"


@dataclass
class NotificationMessage:
    """A notification addressed to one owner."""

    owner_user_id: str
    template: NotificationTemplate
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "owner_user_id": self.owner_user_id,
            "template": self.template.value,
            "context": self.context,
            "created_at": self.created_at.isoformat(),
        }


# ============================================================================
# Channels
# ============================================================================


class NotificationChannel(ABC):
    """
    Abstract delivery channel.

    WHY: Channel abstraction allows swapping the outbound transport
    (webhook to the messaging service, logs in development, in-memory in
    tests) without touching the reconciler or the lifecycle tracker.
    """

    name: str = "channel"

    @abstractmethod
    async def deliver(self, message: NotificationMessage) -> None:
        """
        Deliver a message.

        Raises:
            NotificationDeliveryError: If delivery failed
        """


class LoggingNotificationChannel(NotificationChannel):
    """Writes notifications to the log. Default when no webhook is configured."""

    name = "logging"

    async def deliver(self, message: NotificationMessage) -> None:
        logger.info(
            f"[NOTIFICATION] {message.template.value} for owner {message.owner_user_id}",
            extra={
                "owner_user_id": message.owner_user_id,
                "template": message.template.value,
            },
        )


class InMemoryNotificationChannel(NotificationChannel):
    """
    Records messages instead of sending them.

    Set `fail_with` to make every delivery raise, to exercise failure handling.
    """

    name = "memory"

    def __init__(self, fail_with: Optional[Exception] = None):
        self.sent: List[NotificationMessage] = []
        self.fail_with = fail_with

    async def deliver(self, message: NotificationMessage) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(message)

    def templates(self) -> List[NotificationTemplate]:
        return [message.template for message in self.sent]

    def clear(self) -> None:
        self.sent = []


class WebhookNotificationChannel(NotificationChannel):
    """
    POSTs notifications as JSON to the messaging service.

    Attributes:
        webhook_url: Endpoint receiving notifications
        timeout: Request timeout in seconds
    """

    name = "webhook"

    def __init__(self, webhook_url: Optional[str] = None, timeout: Optional[float] = None):
        self.webhook_url = webhook_url or settings.NOTIFICATION_WEBHOOK_URL
        self.timeout = timeout if timeout is not None else settings.NOTIFICATION_TIMEOUT_SECONDS

    async def deliver(self, message: NotificationMessage) -> None:
        if not self.webhook_url:
            raise NotificationDeliveryError("Notification webhook URL not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=message.to_payload())
        except httpx.TimeoutException as e:
            raise NotificationDeliveryError(
                message="Notification webhook request timed out",
                timeout=self.timeout,
            ) from e
        except httpx.RequestError as e:
            raise NotificationDeliveryError(
                message="Notification webhook request failed",
                error=str(e),
            ) from e

        if response.is_success:
            return

        raise NotificationDeliveryError(
            message="Notification webhook returned an error",
            response_status=response.status_code,
            response_text=response.text[:500],
        )


# ============================================================================
# Dispatcher
# ============================================================================


class NotificationDispatcher:
    """
    Best-effort notification sender.

    WHAT: `send(owner_user_id, template, context)` delivers via the
    configured channel and returns whether it succeeded.

    WHY: Callers invoke this after their transaction committed. Nothing
    raised here may reach them.
    """

    def __init__(self, channel: Optional[NotificationChannel] = None):
        self.channel = channel or LoggingNotificationChannel()
        self.base_url = settings.FRONTEND_URL

    def dashboard_url(self, path: str = "/") -> str:
        return f"{self.base_url.rstrip('/')}{path}"

    async def send(
        self,
        owner_user_id: Optional[str],
        template: NotificationTemplate,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send a notification without raising.

        Args:
            owner_user_id: Recipient; None skips the send
            template: Notification kind
            context: Template variables

        Returns:
            True if the channel accepted the message
        """
        if not owner_user_id:
            logger.warning(
                "Notification skipped: no owner",
                extra={"template": template.value},
            )
            return False

        message = NotificationMessage(
            owner_user_id=owner_user_id,
            template=template,
            context=dict(context or {}),
        )

        try:
            await self.channel.deliver(message)
            return True
        except NotificationDeliveryError as e:
            logger.warning(
                f"Notification delivery failed: {e.message}",
                extra={
                    "owner_user_id": owner_user_id,
                    "template": template.value,
                    "channel": self.channel.name,
                },
            )
            return False
        except Exception as e:
            logger.warning(
                f"Unexpected error delivering notification: {e}",
                extra={
                    "owner_user_id": owner_user_id,
                    "template": template.value,
                    "channel": self.channel.name,
                },
            )
            return False


_notification_dispatcher: Optional[NotificationDispatcher] = None


def get_notification_dispatcher() -> NotificationDispatcher:
    """
    Get or create the global notification dispatcher.

    Uses the webhook channel when it is enabled and has a URL, the
    logging channel otherwise.
    """
    global _notification_dispatcher

    if _notification_dispatcher is None:
        if settings.notification_webhook_configured:
            channel: NotificationChannel = WebhookNotificationChannel()
        else:
            channel = LoggingNotificationChannel()
        _notification_dispatcher = NotificationDispatcher(channel)

    return _notification_dispatcher
