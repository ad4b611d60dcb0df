"""
Tests for threshold alert dispatch.

Covers the cooldown, per-period deduplication, multi-channel fan-out with
partial failures and concurrent dispatchers.
"""

import os
import shutil
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from minute_guard.channels import AlertChannel, InAppChannel, WebhookChannel
from minute_guard.config.loader import AlertChannelKind, LimitConfig, StaticConfigProvider
from minute_guard.core.alerts import (
    SKIP_ALREADY_ALERTED,
    SKIP_COOLDOWN,
    SKIP_NOT_ENABLED,
    SKIP_NOT_REACHED,
    AlertDispatcher,
)
from minute_guard.core.errors import ChannelDeliveryFailure
from minute_guard.core.recorder import UsageRecorder
from minute_guard.storage.repository import SqliteUsageStore

NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingChannel(AlertChannel):
    """Test channel that records what it was asked to deliver."""

    def __init__(self, kind, result=True, error=None, gate=None):
        self.kind = kind
        self.result = result
        self.error = error
        self.gate = gate
        self.delivered = []

    def deliver(self, alert, config):
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        self.delivered.append(alert)
        return self.result


class DispatcherTestCase:
    """Shared database and recorder setup."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = SqliteUsageStore(os.path.join(self.temp_dir, "test.db"))
        self.store.initialize()
        self.clock = MutableClock(NOW)
        self.provider = StaticConfigProvider({"acme": LimitConfig(max_overage_charge=0)})
        self.recorder = UsageRecorder(self.store, self.provider, clock=self.clock)
        self.events = 0

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def use(self, seconds):
        """Record usage at the current clock time."""
        self.events += 1
        return self.recorder.record_usage("acme", f"usage-{self.events}", seconds)

    def dispatcher(self, channels=(), channel_timeout=5.0):
        return AlertDispatcher(
            self.store,
            self.provider,
            channels=channels,
            clock=self.clock,
            channel_timeout=channel_timeout
        )


class TestDispatchRules(DispatcherTestCase):
    """Test when alerts are raised or skipped."""

    def test_creates_alert_and_advances_ratchet(self):
        record = self.recorder.record_usage("acme", "call-1", 11400)
        in_app = InAppChannel(self.store)

        result = self.dispatcher([in_app]).dispatch_alert("acme", 95, period=record.period)

        assert result.dispatched
        assert result.alert.threshold == 95
        assert result.alert.severity == "warning"
        assert result.alert.usage_percent == 95
        assert result.channels_attempted == ("in_app",)
        assert result.channels_confirmed == ("in_app",)
        assert result.failures == {}
        assert result.alert.channels_confirmed == ("in_app",)
        period = self.store.get_active_period("acme", NOW)
        assert period.last_alerted_threshold == 95
        assert period.last_alert_sent_at == NOW
        assert len(self.store.list_notifications("acme")) == 1

    def test_threshold_not_in_ladder_is_skipped(self):
        result = self.dispatcher().dispatch_alert("acme", 50)

        assert not result.dispatched
        assert result.skipped_reason == SKIP_NOT_ENABLED
        assert result.alert_id is None

    def test_cooldown_blocks_repeat(self):
        self.provider.set_limit_config("acme", LimitConfig(cooldown_minutes=60))
        self.use(10200)
        dispatcher = self.dispatcher()

        first = dispatcher.dispatch_alert("acme", 85)
        self.clock.advance(minutes=30)
        second = dispatcher.dispatch_alert("acme", 85)

        assert first.dispatched
        assert second.skipped_reason == SKIP_COOLDOWN

    def test_cooldown_spans_period_boundary(self):
        self.clock.now = datetime(2026, 10, 31, 23, 50, tzinfo=timezone.utc)
        self.use(8400)
        dispatcher = self.dispatcher()
        assert dispatcher.dispatch_alert("acme", 70).dispatched

        self.clock.advance(minutes=20)
        result = dispatcher.dispatch_alert("acme", 70)

        assert result.skipped_reason == SKIP_COOLDOWN
        assert self.store.count_periods("acme") == 2

    def test_once_per_period_after_cooldown(self):
        self.use(10200)
        dispatcher = self.dispatcher()
        dispatcher.dispatch_alert("acme", 85)

        self.clock.advance(hours=3)
        result = dispatcher.dispatch_alert("acme", 85)

        assert result.skipped_reason == SKIP_ALREADY_ALERTED
        assert self.store.count_alerts("acme", 85, datetime(2026, 10, 1, tzinfo=timezone.utc)) == 1

    def test_lower_threshold_after_higher_is_skipped(self):
        self.use(11400)
        dispatcher = self.dispatcher()
        dispatcher.dispatch_alert("acme", 95)

        result = dispatcher.dispatch_alert("acme", 85)

        assert result.skipped_reason == SKIP_ALREADY_ALERTED

    def test_new_period_alerts_again(self):
        self.use(10200)
        dispatcher = self.dispatcher()
        dispatcher.dispatch_alert("acme", 85)

        self.clock.now = datetime(2026, 11, 3, tzinfo=timezone.utc)
        self.use(10200)
        result = dispatcher.dispatch_alert("acme", 85)

        assert result.dispatched
        assert result.alert.period_start == datetime(2026, 11, 1, tzinfo=timezone.utc)

    def test_unreached_threshold_is_skipped(self):
        self.use(600)
        dispatcher = self.dispatcher()

        early = dispatcher.dispatch_alert("acme", 100)

        assert early.skipped_reason == SKIP_NOT_REACHED
        assert self.store.get_active_period("acme", NOW).last_alerted_threshold is None

        self.use(8400)
        reached = dispatcher.dispatch_alert("acme", 70)

        assert reached.dispatched
        assert reached.alert.usage_percent == 75

    def test_dispatches_share_one_pool(self):
        self.use(11400)
        dispatcher = self.dispatcher([InAppChannel(self.store)])
        pool = dispatcher._executor

        assert dispatcher.dispatch_alert("acme", 70).channels_confirmed == ("in_app",)
        assert dispatcher.dispatch_alert("acme", 95).channels_confirmed == ("in_app",)
        assert dispatcher._executor is pool

        dispatcher.close()
        with pytest.raises(RuntimeError):
            pool.submit(print)

    def test_alert_message_uses_triggering_values(self):
        self.recorder.record_usage("acme", "call-1", 12000)
        record = self.recorder.record_usage("acme", "call-2", 600)

        result = self.dispatcher().dispatch_alert("acme", 100, period=record.period)

        assert result.alert.severity == "critical"
        assert result.alert.overage_minutes == Decimal("10")
        assert result.alert.overage_charge == 3500
        assert "35.00" in result.alert.message


class TestChannelFanOut(DispatcherTestCase):
    """Test delivery across several channels."""

    def setup_method(self):
        super().setup_method()
        self.provider.set_limit_config("acme", LimitConfig(
            alert_channels=(
                AlertChannelKind.IN_APP,
                AlertChannelKind.EMAIL,
                AlertChannelKind.WEBHOOK,
            ),
            email_recipients=("ops@acme.test",),
            webhook_url="https://hooks.example.com/usage"
        ))
        self.use(10200)

    def test_partial_failure_keeps_alert(self):
        webhook = WebhookChannel(client=httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(500))
        ))
        email = RecordingChannel(AlertChannelKind.EMAIL)

        result = self.dispatcher([InAppChannel(self.store), email, webhook]).dispatch_alert("acme", 85)

        assert result.dispatched
        assert result.channels_attempted == ("in_app", "email", "webhook")
        assert result.channels_confirmed == ("in_app", "email")
        assert "HTTP 500" in result.failures["webhook"]
        assert len(email.delivered) == 1
        stored = self.store.get_alert(result.alert_id)
        assert stored.channels_confirmed == ("in_app", "email")

    def test_raising_channel_does_not_stop_others(self):
        failing = RecordingChannel(
            AlertChannelKind.EMAIL, error=ChannelDeliveryFailure("email", "smtp down")
        )
        webhook = RecordingChannel(AlertChannelKind.WEBHOOK)

        result = self.dispatcher([failing, webhook, InAppChannel(self.store)]).dispatch_alert("acme", 85)

        assert result.channels_confirmed == ("in_app", "webhook")
        assert result.failures == {"email": "email: smtp down"}

    def test_false_return_counts_as_failure(self):
        email = RecordingChannel(AlertChannelKind.EMAIL, result=False)

        result = self.dispatcher([email, InAppChannel(self.store)]).dispatch_alert("acme", 85)

        assert "email" in result.failures
        assert "webhook" in result.failures
        assert result.failures["webhook"] == "no channel registered"
        assert result.channels_confirmed == ("in_app",)

    def test_slow_channel_times_out(self):
        gate = threading.Event()
        slow = RecordingChannel(AlertChannelKind.WEBHOOK, gate=gate)
        email = RecordingChannel(AlertChannelKind.EMAIL)
        try:
            result = self.dispatcher(
                [slow, email, InAppChannel(self.store)], channel_timeout=0.2
            ).dispatch_alert("acme", 85)
        finally:
            gate.set()

        assert result.dispatched
        assert result.failures["webhook"].startswith("timed out")
        assert result.channels_confirmed == ("in_app", "email")

    def test_no_channels_enabled(self):
        self.provider.set_limit_config("acme", LimitConfig(alert_channels=()))

        result = self.dispatcher().dispatch_alert("acme", 85)

        assert result.dispatched
        assert result.channels_attempted == ()
        assert result.channels_confirmed == ()


class TestConcurrentDispatch(DispatcherTestCase):
    """Test that racing dispatchers create exactly one alert."""

    def test_one_alert_for_concurrent_crossings(self):
        self.use(10200)
        channel = RecordingChannel(AlertChannelKind.IN_APP)
        dispatcher = self.dispatcher([channel])
        barrier = threading.Barrier(6)
        results = []

        def worker():
            barrier.wait()
            results.append(dispatcher.dispatch_alert("acme", 85))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for r in results if r.dispatched) == 1
        assert len(results) == 6
        assert len(channel.delivered) == 1
        assert self.store.count_alerts("acme", 85, datetime(2026, 10, 1, tzinfo=timezone.utc)) == 1
