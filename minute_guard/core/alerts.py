"""
Threshold alert dispatch.

An alert is claimed atomically before anything is sent: the cooldown
re-check, the ratchet advance and the alert insert run in one storage
transaction, so concurrent detections of the same crossing produce exactly
one alert. Delivery then fans out to every enabled channel; a failing or
slow channel never affects the others.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional, Sequence, Tuple

from minute_guard.channels.base import AlertChannel
from minute_guard.config.loader import LimitConfig
from minute_guard.storage.models import Alert, UsagePeriod
from minute_guard.storage.repository import SqliteUsageStore

from .accounting import remaining_included, usage_percent
from .periods import utc_now
from .recorder import resolve_current_period
from .thresholds import template_for

logger = logging.getLogger(__name__)

SKIP_NOT_ENABLED = "threshold_not_enabled"
SKIP_COOLDOWN = "cooldown_active"
SKIP_ALREADY_ALERTED = "already_alerted"
SKIP_NOT_REACHED = "threshold_not_reached"


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of a dispatch attempt.

    A skipped dispatch is not an error. ``failures`` maps channel name to
    the failure message for channels that did not confirm delivery.
    """
    tenant_id: str
    threshold: int
    dispatched: bool
    alert: Optional[Alert] = None
    skipped_reason: Optional[str] = None
    channels_attempted: Tuple[str, ...] = ()
    channels_confirmed: Tuple[str, ...] = ()
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def alert_id(self) -> Optional[int]:
        return self.alert.id if self.alert else None


def format_money(minor_units: int) -> str:
    return f"{Decimal(minor_units) / 100:,.2f}"


def build_alert(
    tenant_id: str,
    threshold: int,
    config: LimitConfig,
    period: UsagePeriod,
    now: datetime
) -> Alert:
    """Render the alert for ``threshold`` from the triggering period's values."""
    template = template_for(threshold)
    percent = usage_percent(config, period.included_minutes_used)
    remaining = remaining_included(config, period.included_minutes_used)
    message = template.message.format(
        percent=f"{percent:.0f}",
        remaining=f"{remaining:.0f}",
        overage=f"{period.overage_minutes_used:.1f}",
        charge=format_money(period.overage_charge),
    )
    return Alert(
        tenant_id=tenant_id,
        threshold=threshold,
        severity=template.severity.value,
        title=template.title,
        message=message,
        period_start=period.period_start,
        usage_percent=percent,
        minutes_used=period.total_minutes_used,
        included_minutes=config.included_minutes,
        overage_minutes=period.overage_minutes_used,
        overage_charge=period.overage_charge,
        created_at=now
    )


class AlertDispatcher:
    """Creates threshold alerts and delivers them across channels."""

    def __init__(
        self,
        store: SqliteUsageStore,
        config_provider,
        channels: Sequence[AlertChannel] = (),
        clock: Callable[[], datetime] = utc_now,
        channel_timeout: float = 5.0,
        max_workers: int = 8
    ):
        """Initialize the dispatcher.

        Args:
            store: Storage holding periods and alerts
            config_provider: Object exposing ``get_limit_config(tenant_id)``
            channels: Available channel implementations, one per kind
            clock: Returns the current time (timezone-aware UTC)
            channel_timeout: Seconds each channel gets before it counts as failed
            max_workers: Size of the delivery pool shared by all dispatches.
                Channels must bound their own I/O (SMTP and HTTP timeouts); a
                channel that outlives ``channel_timeout`` keeps its worker
                until its transport gives up.
        """
        self.store = store
        self.config_provider = config_provider
        self.channels = {channel.kind: channel for channel in channels}
        self.clock = clock
        self.channel_timeout = channel_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="alert")

    def dispatch_alert(
        self,
        tenant_id: str,
        threshold: int,
        period: Optional[UsagePeriod] = None
    ) -> DispatchResult:
        """Raise and deliver the alert for ``threshold``.

        Args:
            tenant_id: Tenant whose usage crossed the threshold
            threshold: Ladder value that was crossed
            period: Post-update period of the triggering event. When omitted
                (re-dispatch), the current period is read.

        Returns:
            DispatchResult describing what was created and delivered

        Raises:
            PeriodUnresolvable: If the tenant has no limit config
        """
        config = self.config_provider.get_limit_config(tenant_id)
        if threshold not in config.alert_thresholds:
            return self._skipped(tenant_id, threshold, SKIP_NOT_ENABLED)

        now = self.clock()
        if period is None:
            period = resolve_current_period(self.store, tenant_id, now)
        cooldown_start = now - timedelta(minutes=config.cooldown_minutes)

        if self.store.alert_created_since(tenant_id, threshold, cooldown_start):
            return self._skipped(tenant_id, threshold, SKIP_COOLDOWN)

        # A re-dispatch must not ratchet past usage that has not happened yet.
        if usage_percent(config, period.included_minutes_used) < threshold:
            return self._skipped(tenant_id, threshold, SKIP_NOT_REACHED)

        alert = build_alert(tenant_id, threshold, config, period, now)
        skipped_reason = None
        with self.store.atomic() as conn:
            if self.store.alert_created_since(tenant_id, threshold, cooldown_start, conn=conn):
                skipped_reason = SKIP_COOLDOWN
            elif not self.store.advance_ratchet_if_below(period.id, threshold, now=now, conn=conn):
                skipped_reason = SKIP_ALREADY_ALERTED
            else:
                created = self.store.insert_alert_if_absent(alert, conn=conn)
                if created is None:
                    skipped_reason = SKIP_ALREADY_ALERTED
                else:
                    alert = created

        if skipped_reason:
            return self._skipped(tenant_id, threshold, skipped_reason)

        logger.info(
            "Created %s alert %s for tenant %s at %d%%",
            alert.severity, alert.id, tenant_id, threshold
        )
        attempted, confirmed, failures = self._deliver(alert, config)
        self.store.update_alert_channels(alert.id, attempted, confirmed)

        return DispatchResult(
            tenant_id=tenant_id,
            threshold=threshold,
            dispatched=True,
            alert=self.store.get_alert(alert.id),
            channels_attempted=attempted,
            channels_confirmed=confirmed,
            failures=failures
        )

    def _deliver(
        self,
        alert: Alert,
        config: LimitConfig
    ) -> Tuple[Tuple[str, ...], Tuple[str, ...], Dict[str, str]]:
        """Deliver on every enabled channel concurrently and gather outcomes."""
        attempted = tuple(kind.value for kind in config.alert_channels)
        failures: Dict[str, str] = {}
        futures = {}

        if not attempted:
            return attempted, (), failures

        for kind in config.alert_channels:
            channel = self.channels.get(kind)
            if channel is None:
                failures[kind.value] = "no channel registered"
                continue
            futures[self._executor.submit(channel.deliver, alert, config)] = kind.value

        done, not_done = wait(futures, timeout=self.channel_timeout)
        for future in not_done:
            # Only drops deliveries still queued behind a busy pool.
            future.cancel()
            failures[futures[future]] = f"timed out after {self.channel_timeout}s"
        for future in done:
            name = futures[future]
            try:
                if not future.result():
                    failures[name] = "channel reported failure"
            except Exception as e:
                failures[name] = str(e) or e.__class__.__name__

        for name, reason in failures.items():
            logger.warning("Alert %s not delivered via %s: %s", alert.id, name, reason)

        confirmed = tuple(name for name in attempted if name not in failures)
        return attempted, confirmed, failures

    def close(self) -> None:
        """Stop the delivery pool without waiting for in-flight channels."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _skipped(self, tenant_id: str, threshold: int, reason: str) -> DispatchResult:
        logger.info("Skipped %d%% alert for tenant %s: %s", threshold, tenant_id, reason)
        return DispatchResult(
            tenant_id=tenant_id,
            threshold=threshold,
            dispatched=False,
            skipped_reason=reason
        )
