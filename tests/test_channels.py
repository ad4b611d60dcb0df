"""
Tests for alert delivery channels.
"""

import json
import os
import shutil
import smtplib
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from minute_guard.channels import EmailChannel, InAppChannel, WebhookChannel
from minute_guard.channels.webhook import build_payload
from minute_guard.config.loader import AlertChannelKind, LimitConfig
from minute_guard.core.errors import ChannelDeliveryFailure
from minute_guard.storage.models import Alert
from minute_guard.storage.repository import SqliteUsageStore

NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)

WEBHOOK_CONFIG = LimitConfig(
    alert_channels=(AlertChannelKind.WEBHOOK,),
    webhook_url="https://hooks.example.com/usage"
)
EMAIL_CONFIG = LimitConfig(
    alert_channels=(AlertChannelKind.EMAIL,),
    email_recipients=("ops@acme.test", "billing@acme.test")
)


def make_alert(alert_id=7):
    return Alert(
        id=alert_id,
        tenant_id="acme",
        threshold=95,
        severity="warning",
        title="Call minutes almost exhausted",
        message="You have used 95% of your included call minutes.",
        period_start=datetime(2026, 10, 1, tzinfo=timezone.utc),
        usage_percent=Decimal("95"),
        minutes_used=Decimal("190"),
        included_minutes=200,
        overage_minutes=Decimal("0"),
        overage_charge=0,
        created_at=NOW
    )


class TestWebhookChannel:
    """Test webhook delivery against a mock transport."""

    def _channel(self, handler):
        return WebhookChannel(client=httpx.Client(transport=httpx.MockTransport(handler)))

    def test_posts_payload(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        assert self._channel(handler).deliver(make_alert(), WEBHOOK_CONFIG)

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://hooks.example.com/usage"
        assert request.headers["X-Minute-Guard-Event"] == "usage_alert"
        body = json.loads(request.content)
        assert body["event"] == "usage_alert"
        assert body["data"]["alert_id"] == 7
        assert body["data"]["threshold"] == 95

    def test_non_success_status_fails(self):
        channel = self._channel(lambda request: httpx.Response(503))

        with pytest.raises(ChannelDeliveryFailure, match="HTTP 503"):
            channel.deliver(make_alert(), WEBHOOK_CONFIG)

    def test_transport_error_fails(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ChannelDeliveryFailure, match="connection refused"):
            self._channel(handler).deliver(make_alert(), WEBHOOK_CONFIG)

    def test_missing_url_fails(self):
        channel = self._channel(lambda request: httpx.Response(200))

        with pytest.raises(ChannelDeliveryFailure, match="webhook URL"):
            channel.deliver(make_alert(), LimitConfig())

    def test_payload_is_json_serialisable(self):
        payload = build_payload(make_alert())
        assert json.loads(json.dumps(payload))["data"]["usage_percent"] == 95.0
        assert payload["timestamp"] == NOW.isoformat()


class TestEmailChannel:
    """Test email delivery with an injected sender."""

    def test_sends_to_recipients(self):
        sender = MagicMock()
        channel = EmailChannel(from_address="alerts@example.test", sender=sender)

        assert channel.deliver(make_alert(), EMAIL_CONFIG)

        message = sender.call_args[0][0]
        assert message["To"] == "ops@acme.test, billing@acme.test"
        assert message["From"] == "alerts@example.test"
        assert message["Subject"] == "[WARNING] Call minutes almost exhausted"
        assert "95%" in message.get_content()

    def test_smtp_error_fails(self):
        sender = MagicMock(side_effect=smtplib.SMTPServerDisconnected("gone"))
        channel = EmailChannel(sender=sender)

        with pytest.raises(ChannelDeliveryFailure, match="gone"):
            channel.deliver(make_alert(), EMAIL_CONFIG)

    def test_no_recipients_fails(self):
        channel = EmailChannel(sender=MagicMock())

        with pytest.raises(ChannelDeliveryFailure, match="recipients"):
            channel.deliver(make_alert(), LimitConfig())


class TestInAppChannel:
    """Test the in-app notification feed."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = SqliteUsageStore(os.path.join(self.temp_dir, "test.db"))
        self.store.initialize()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_writes_notification(self):
        assert InAppChannel(self.store).deliver(make_alert(alert_id=None), LimitConfig())

        notifications = self.store.list_notifications("acme")
        assert len(notifications) == 1
        assert notifications[0].kind == "usage_alert"
        assert notifications[0].severity == "warning"
        assert not notifications[0].read

    def test_channel_name(self):
        assert InAppChannel(self.store).name == "in_app"
