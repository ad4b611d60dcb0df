"""
Usage recording.

Turns a raw usage event into an idempotent ledger entry and an atomic
update of the tenant's current period.

Guarantees:
1. Idempotence - the (tenant, source id) uniqueness constraint means a
   replayed event is never recorded twice
2. Atomicity - the ledger insert and the period update commit together
3. Bounded retries - a lost compare-and-swap is retried with fresh state,
   and exhausting the budget fails loudly rather than dropping usage
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from minute_guard.config.loader import LimitConfig
from minute_guard.storage.models import UsagePeriod, UsageTransaction
from minute_guard.storage.repository import SqliteUsageStore

from .accounting import (
    is_at_limit,
    remaining_included,
    seconds_to_minutes,
    split_usage,
    usage_percent,
)
from .errors import StorageConflict, VersionConflict
from .periods import billing_window, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordResult:
    """Outcome of recording one usage event.

    Totals are the period's values right after this event was applied. A
    replayed event returns the values computed when it was first recorded.
    """
    tenant_id: str
    source_id: str
    period_start: datetime
    included_minutes: Decimal
    overage_minutes: Decimal
    charge: int
    included_minutes_used: Decimal
    overage_minutes_used: Decimal
    overage_charge_total: int
    usage_percent: Decimal
    remaining_included: Decimal
    crossed_limit: bool
    replayed: bool = field(default=False, compare=False)
    period: Optional[UsagePeriod] = field(default=None, compare=False, repr=False)

    @property
    def total_minutes_used(self) -> Decimal:
        return self.included_minutes_used + self.overage_minutes_used


def resolve_current_period(
    store: SqliteUsageStore,
    tenant_id: str,
    now: datetime
) -> UsagePeriod:
    """Return the tenant's active period for ``now``, creating it if needed."""
    period = store.get_active_period(tenant_id, now)
    if period is None:
        start, end = billing_window(now)
        period = store.create_period(tenant_id, start, end)
        logger.info("Opened billing period %s for tenant %s", start.date(), tenant_id)
    return period


def _result_from_transaction(
    txn: UsageTransaction,
    period_start: datetime,
    config: LimitConfig,
    replayed: bool,
    period: Optional[UsagePeriod] = None
) -> RecordResult:
    return RecordResult(
        tenant_id=txn.tenant_id,
        source_id=txn.source_id,
        period_start=period_start,
        included_minutes=txn.included_minutes,
        overage_minutes=txn.overage_minutes,
        charge=txn.charge,
        included_minutes_used=txn.included_total,
        overage_minutes_used=txn.overage_total,
        overage_charge_total=txn.overage_charge_total,
        usage_percent=txn.usage_percent,
        remaining_included=remaining_included(config, txn.included_total),
        crossed_limit=txn.crossed_limit,
        replayed=replayed,
        period=period
    )


class UsageRecorder:
    """Records usage events against tenants' current billing periods."""

    def __init__(
        self,
        store: SqliteUsageStore,
        config_provider,
        clock: Callable[[], datetime] = utc_now,
        max_attempts: int = 3,
        backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize the recorder.

        Args:
            store: Storage holding periods and the transaction ledger
            config_provider: Object exposing ``get_limit_config(tenant_id)``
            clock: Returns the current time (timezone-aware UTC)
            max_attempts: Attempts before surfacing StorageConflict
            backoff_seconds: Base delay between attempts, grown linearly
            sleep: Delay function, injectable for tests
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.config_provider = config_provider
        self.clock = clock
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def record_usage(
        self,
        tenant_id: str,
        source_id: str,
        seconds_used: int,
        metadata: Optional[Dict[str, Any]] = None
    ) -> RecordResult:
        """Record ``seconds_used`` of consumption for a usage event.

        Args:
            tenant_id: Tenant the usage belongs to
            source_id: Unique id of the usage event (e.g. call id)
            seconds_used: Consumed seconds, must be > 0
            metadata: Optional JSON-serialisable context stored on the ledger

        Returns:
            RecordResult with the new period totals

        Raises:
            ValueError: If inputs are invalid
            PeriodUnresolvable: If the tenant has no limit config
            StorageConflict: If the update could not be applied after retries
        """
        if isinstance(seconds_used, bool) or not isinstance(seconds_used, int):
            raise ValueError("seconds_used must be an integer")
        if seconds_used <= 0:
            raise ValueError("seconds_used must be > 0")
        if not source_id or not str(source_id).strip():
            raise ValueError("source_id is required and cannot be empty")

        config = self.config_provider.get_limit_config(tenant_id)

        existing = self.store.get_transaction(tenant_id, source_id)
        if existing is not None:
            logger.debug("Replay of %s/%s, returning original result", tenant_id, source_id)
            return self._replay(existing, config)

        minutes = seconds_to_minutes(seconds_used)
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            retry=retry_if_exception_type(VersionConflict),
            sleep=self.sleep,
            before_sleep=before_sleep_log(logger, logging.DEBUG)
        )
        try:
            return retrying(self._record_once, tenant_id, source_id, seconds_used, minutes, metadata, config)
        except RetryError:
            logger.warning(
                "Giving up recording %s/%s after %d attempts",
                tenant_id, source_id, self.max_attempts
            )
            raise StorageConflict(tenant_id, self.max_attempts) from None

    def _record_once(
        self,
        tenant_id: str,
        source_id: str,
        seconds_used: int,
        minutes: Decimal,
        metadata: Optional[Dict[str, Any]],
        config: LimitConfig
    ) -> RecordResult:
        """One attempt against fresh period state; raises VersionConflict if it lost."""
        now = self.clock()
        period = resolve_current_period(self.store, tenant_id, now)
        split = split_usage(config, period, minutes)

        included_total = period.included_minutes_used + split.included_minutes
        overage_total = period.overage_minutes_used + split.overage_minutes
        txn = UsageTransaction(
            tenant_id=tenant_id,
            source_id=source_id,
            period_id=period.id,
            seconds_used=seconds_used,
            minutes_used=minutes,
            included_minutes=split.included_minutes,
            overage_minutes=split.overage_minutes,
            charge=split.charge,
            included_total=included_total,
            overage_total=overage_total,
            overage_charge_total=period.overage_charge + split.charge,
            usage_percent=usage_percent(config, included_total),
            crossed_limit=(
                not is_at_limit(config, period.included_minutes_used, period.overage_minutes_used)
                and is_at_limit(config, included_total, overage_total)
            ),
            recorded_at=now,
            metadata=dict(metadata or {})
        )

        with self.store.atomic() as conn:
            outcome = self.store.insert_transaction_if_absent(txn, conn=conn)
            if outcome.inserted:
                updated = self.store.apply_usage(
                    period.id, period.version, split.delta, conn=conn
                )

        if not outcome.inserted:
            logger.debug("Concurrent replay of %s/%s", tenant_id, source_id)
            return self._replay(outcome.existing, config)

        if split.charge < split.raw_charge:
            logger.info(
                "Overage charge for tenant %s capped at %d (raw %d)",
                tenant_id, split.charge, split.raw_charge
            )
        logger.info(
            "Recorded %s min for %s/%s (included %s, overage %s, charge %d)",
            minutes, tenant_id, source_id,
            split.included_minutes, split.overage_minutes, split.charge
        )
        return _result_from_transaction(
            txn, period.period_start, config, replayed=False, period=updated
        )

    def _replay(self, txn: UsageTransaction, config: LimitConfig) -> RecordResult:
        period = self.store.get_period(txn.period_id)
        return _result_from_transaction(txn, period.period_start, config, replayed=True)
