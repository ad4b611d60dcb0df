"""
Metering service facade.

Wires the recorder, policy evaluator, threshold detector and alert
dispatcher around explicitly injected storage, config and channels. The
service holds no mutable state of its own, so any number of instances in
any number of processes can share one database.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from minute_guard.channels.base import AlertChannel
from minute_guard.config.loader import Settings
from minute_guard.storage.models import Alert, UsagePeriod
from minute_guard.storage.repository import SqliteUsageStore

from .accounting import overage_charge, remaining_included, usage_percent
from .alerts import AlertDispatcher, DispatchResult
from .periods import billing_window, days_elapsed, days_remaining, days_total, utc_now
from .policy import CheckResult, PolicyEvaluator
from .recorder import RecordResult, UsageRecorder, resolve_current_period
from .thresholds import detect_crossed_threshold

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageOutcome:
    """A recorded usage event and the alert it triggered, if any."""
    record: RecordResult
    crossed_threshold: Optional[int] = None
    dispatch: Optional[DispatchResult] = None


@dataclass(frozen=True)
class UsageSummary:
    """Current-period usage figures for display."""
    tenant_id: str
    period_start: datetime
    period_end: datetime
    included_minutes: int
    included_minutes_used: Decimal
    overage_minutes_used: Decimal
    remaining_included: Decimal
    usage_percent: Decimal
    overage_charge: int
    call_count: int
    blocked: bool
    blocked_reason: Optional[str]
    days_remaining: int

    @property
    def total_minutes_used(self) -> Decimal:
        return self.included_minutes_used + self.overage_minutes_used


@dataclass(frozen=True)
class OveragePreview:
    """Current overage and a linear projection to the end of the period."""
    current_overage_minutes: Decimal
    current_overage_charge: int
    projected_overage_minutes: Decimal
    projected_overage_charge: int
    days_elapsed: int
    days_total: int
    period_start: datetime
    period_end: datetime


@dataclass(frozen=True)
class BillingHistory:
    items: List[UsagePeriod]
    total: int


class MinuteGuard:
    """Public entry point for usage metering, limits and alerts."""

    def __init__(
        self,
        store: SqliteUsageStore,
        config_provider,
        channels: Sequence[AlertChannel] = (),
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize the service with its collaborators.

        Args:
            store: Storage for periods, transactions and alerts
            config_provider: Object exposing ``get_limit_config(tenant_id)``
            channels: Alert channel implementations
            settings: Retry and timeout settings (defaults if omitted)
            clock: Returns the current time (timezone-aware UTC)
            sleep: Retry delay function, injectable for tests
        """
        settings = settings or Settings()
        self.store = store
        self.config_provider = config_provider
        self.clock = clock

        recorder_kwargs: Dict[str, Any] = {}
        if sleep is not None:
            recorder_kwargs["sleep"] = sleep
        self.recorder = UsageRecorder(
            store,
            config_provider,
            clock=clock,
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
            **recorder_kwargs
        )
        self.evaluator = PolicyEvaluator(store, config_provider, clock=clock)
        self.dispatcher = AlertDispatcher(
            store,
            config_provider,
            channels=channels,
            clock=clock,
            channel_timeout=settings.channel_timeout
        )

    def check_limit(self, tenant_id: str) -> CheckResult:
        """Pre-check before starting a usage-consuming action."""
        return self.evaluator.check_limit(tenant_id)

    def record_usage(
        self,
        tenant_id: str,
        source_id: str,
        seconds_used: int,
        metadata: Optional[Dict[str, Any]] = None
    ) -> UsageOutcome:
        """Record consumption, then alert on a newly crossed threshold.

        Usage is durably recorded before any alert work starts; alert
        failures are logged and never propagate from here. Replayed events
        never trigger alerts.

        Raises:
            PeriodUnresolvable: If the tenant has no limit config
            StorageConflict: If the update could not be applied after retries
        """
        record = self.recorder.record_usage(tenant_id, source_id, seconds_used, metadata)
        if record.replayed or record.period is None:
            return UsageOutcome(record=record)

        config = self.config_provider.get_limit_config(tenant_id)
        threshold = detect_crossed_threshold(
            config.alert_thresholds,
            record.usage_percent,
            record.period.last_alerted_threshold
        )
        if threshold is None:
            return UsageOutcome(record=record)

        try:
            dispatch = self.dispatcher.dispatch_alert(tenant_id, threshold, period=record.period)
        except Exception:
            logger.exception(
                "Alert dispatch for tenant %s at %d%% failed after usage was recorded",
                tenant_id, threshold
            )
            dispatch = None
        return UsageOutcome(record=record, crossed_threshold=threshold, dispatch=dispatch)

    def dispatch_alert(self, tenant_id: str, threshold: int) -> DispatchResult:
        """Re-dispatch an alert for the current period."""
        return self.dispatcher.dispatch_alert(tenant_id, threshold)

    def close(self) -> None:
        """Release the alert delivery pool."""
        self.dispatcher.close()

    def acknowledge_alert(self, alert_id: int, by: str) -> bool:
        return self.store.acknowledge_alert(alert_id, by, self.clock())

    def acknowledge_all_alerts(self, tenant_id: str, by: str) -> int:
        return self.store.acknowledge_all_alerts(tenant_id, by, self.clock())

    def list_recent_alerts(self, tenant_id: str, limit: int = 20) -> List[Alert]:
        return self.store.list_recent_alerts(tenant_id, limit)

    def list_unacknowledged_alerts(self, tenant_id: str, limit: int = 10) -> List[Alert]:
        return self.store.list_unacknowledged_alerts(tenant_id, limit)

    def count_unacknowledged_alerts(self, tenant_id: str) -> int:
        return self.store.count_unacknowledged_alerts(tenant_id)

    def usage_summary(self, tenant_id: str) -> UsageSummary:
        """Totals, remaining minutes and days left for the current period."""
        config = self.config_provider.get_limit_config(tenant_id)
        now = self.clock()
        period = resolve_current_period(self.store, tenant_id, now)
        return UsageSummary(
            tenant_id=tenant_id,
            period_start=period.period_start,
            period_end=period.period_end,
            included_minutes=config.included_minutes,
            included_minutes_used=period.included_minutes_used,
            overage_minutes_used=period.overage_minutes_used,
            remaining_included=remaining_included(config, period.included_minutes_used),
            usage_percent=usage_percent(config, period.included_minutes_used),
            overage_charge=period.overage_charge,
            call_count=period.call_count,
            blocked=period.blocked,
            blocked_reason=period.blocked_reason,
            days_remaining=days_remaining(period.period_end, now)
        )

    def preview_overage(self, tenant_id: str, now: Optional[datetime] = None) -> OveragePreview:
        """Project the period's overage linearly from the daily rate so far.

        The projected charge is capped like real charges are.
        """
        config = self.config_provider.get_limit_config(tenant_id)
        now = now or self.clock()
        period = resolve_current_period(self.store, tenant_id, now)

        elapsed = days_elapsed(period.period_start, now)
        total = days_total(period.period_start, period.period_end)
        if elapsed > 0:
            daily_rate = period.overage_minutes_used / Decimal(elapsed)
            projected = (daily_rate * Decimal(total)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        else:
            projected = Decimal("0")

        projected_charge = overage_charge(projected, config.overage_price)
        if config.has_charge_cap:
            projected_charge = min(projected_charge, config.max_overage_charge)

        return OveragePreview(
            current_overage_minutes=period.overage_minutes_used,
            current_overage_charge=period.overage_charge,
            projected_overage_minutes=projected,
            projected_overage_charge=projected_charge,
            days_elapsed=elapsed,
            days_total=total,
            period_start=period.period_start,
            period_end=period.period_end
        )

    def billing_history(self, tenant_id: str, limit: int = 12, offset: int = 0) -> BillingHistory:
        return BillingHistory(
            items=self.store.list_periods(tenant_id, limit, offset),
            total=self.store.count_periods(tenant_id)
        )

    def mark_overage_billed(self, tenant_id: str, period_start: datetime, invoice_ref: str) -> bool:
        """Record the external invoice for a period's overage. One-shot."""
        marked = self.store.mark_overage_billed(tenant_id, period_start, invoice_ref)
        if not marked:
            logger.warning(
                "Period %s for tenant %s not found or already billed",
                period_start.date(), tenant_id
            )
        return marked

    def rotate_periods(self, tenant_ids: Iterable[str], now: Optional[datetime] = None) -> int:
        """Open the current billing period for each tenant that lacks one.

        Returns:
            Number of periods created
        """
        now = now or self.clock()
        start, end = billing_window(now)
        created = 0
        for tenant_id in tenant_ids:
            if self.store.get_active_period(tenant_id, now) is None:
                self.store.create_period(tenant_id, start, end)
                created += 1
        logger.info("Opened %d billing periods starting %s", created, start.date())
        return created
