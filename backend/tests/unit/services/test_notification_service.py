"""
Unit tests for owner notification dispatch.

WHAT: Tests the dispatcher and its channels.

WHY: Notifications are best-effort; a failing channel must never raise
into the transition that asked for the notification.

HOW: In-memory channel for the dispatcher, mocked httpx client for the
webhook channel.
"""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from partner_access.core.exceptions import NotificationDeliveryError
from partner_access.services import notification_service as notification_module
from partner_access.services.notification_service import (
    InMemoryNotificationChannel,
    LoggingNotificationChannel,
    NotificationDispatcher,
    NotificationMessage,
    NotificationTemplate,
    WebhookNotificationChannel,
    get_notification_dispatcher,
)


class TestNotificationDispatcher:
    """Dispatcher behaviour."""

    @pytest.mark.asyncio
    async def test_send_delivers(self):
        channel = InMemoryNotificationChannel()
        dispatcher = NotificationDispatcher(channel)

        sent = await dispatcher.send(
            "user_1", NotificationTemplate.PAYMENT_FAILED, {"organization_id": 1}
        )

        assert sent is True
        assert channel.templates() == [NotificationTemplate.PAYMENT_FAILED]
        assert channel.sent[0].owner_user_id == "user_1"
        assert channel.sent[0].context == {"organization_id": 1}

    @pytest.mark.asyncio
    async def test_delivery_error_is_swallowed(self):
        channel = InMemoryNotificationChannel(fail_with=NotificationDeliveryError("down"))

        sent = await NotificationDispatcher(channel).send(
            "user_1", NotificationTemplate.PLAN_CHANGED
        )

        assert sent is False

    @pytest.mark.asyncio
    async def test_unexpected_error_is_swallowed(self):
        channel = InMemoryNotificationChannel(fail_with=RuntimeError("bug"))

        sent = await NotificationDispatcher(channel).send(
            "user_1", NotificationTemplate.PLAN_CHANGED
        )

        assert sent is False

    @pytest.mark.asyncio
    async def test_missing_owner_is_skipped(self):
        channel = InMemoryNotificationChannel()

        sent = await NotificationDispatcher(channel).send(None, NotificationTemplate.PLAN_CHANGED)

        assert sent is False
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_logging_channel_accepts(self):
        dispatcher = NotificationDispatcher(LoggingNotificationChannel())

        assert await dispatcher.send("user_1", NotificationTemplate.TRIAL_WILL_END)

    def test_dashboard_url(self):
        dispatcher = NotificationDispatcher(InMemoryNotificationChannel())
        dispatcher.base_url = "https://partners.example.com/"

        assert dispatcher.dashboard_url("/status") == "https://partners.example.com/status"

    def test_global_dispatcher_is_singleton(self, monkeypatch):
        monkeypatch.setattr(notification_module, "_notification_dispatcher", None)

        first = get_notification_dispatcher()

        assert get_notification_dispatcher() is first
        assert isinstance(first.channel, LoggingNotificationChannel)


class TestWebhookNotificationChannel:
    """Webhook channel over httpx."""

    @pytest.fixture
    def message(self):
        return NotificationMessage(
            owner_user_id="user_1",
            template=NotificationTemplate.ORGANIZATION_APPROVED,
            context={"organization_id": 1},
        )

    @staticmethod
    def _client_returning(response=None, error=None):
        client = MagicMock()
        client.post = AsyncMock(return_value=response, side_effect=error)
        client.__aenter__ = AsyncMock(return_value=client)
        client.__aexit__ = AsyncMock(return_value=False)
        return client

    @pytest.mark.asyncio
    async def test_posts_payload(self, message):
        response = httpx.Response(200, request=httpx.Request("POST", "https://hooks.test/n"))
        client = self._client_returning(response=response)
        channel = WebhookNotificationChannel(webhook_url="https://hooks.test/n", timeout=5)

        with patch.object(notification_module.httpx, "AsyncClient", return_value=client):
            await channel.deliver(message)

        url = client.post.call_args.args[0]
        payload = client.post.call_args.kwargs["json"]
        assert url == "https://hooks.test/n"
        assert payload["template"] == "organization_approved"
        assert payload["owner_user_id"] == "user_1"

    @pytest.mark.asyncio
    async def test_error_status_raises(self, message):
        response = httpx.Response(
            503, text="unavailable", request=httpx.Request("POST", "https://hooks.test/n")
        )
        client = self._client_returning(response=response)
        channel = WebhookNotificationChannel(webhook_url="https://hooks.test/n")

        with patch.object(notification_module.httpx, "AsyncClient", return_value=client):
            with pytest.raises(NotificationDeliveryError) as exc_info:
                await channel.deliver(message)

        assert exc_info.value.context["response_status"] == 503

    @pytest.mark.asyncio
    async def test_timeout_raises(self, message):
        client = self._client_returning(error=httpx.ReadTimeout("slow"))
        channel = WebhookNotificationChannel(webhook_url="https://hooks.test/n")

        with patch.object(notification_module.httpx, "AsyncClient", return_value=client):
            with pytest.raises(NotificationDeliveryError):
                await channel.deliver(message)

    @pytest.mark.asyncio
    async def test_missing_url_raises(self, message, monkeypatch):
        monkeypatch.setattr(notification_module.settings, "NOTIFICATION_WEBHOOK_URL", None)
        channel = WebhookNotificationChannel()

        with pytest.raises(NotificationDeliveryError):
            await channel.deliver(message)
