"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class UsagePeriod:
    """The tenant's usage counters for one billing window.

    Counters only grow within a period; every write bumps ``version`` so
    concurrent writers can detect a lost compare-and-swap.
    """
    id: int
    tenant_id: str
    period_start: datetime
    period_end: datetime
    included_minutes_used: Decimal = Decimal("0")
    overage_minutes_used: Decimal = Decimal("0")
    overage_charge: int = 0
    last_alerted_threshold: Optional[int] = None
    last_alert_sent_at: Optional[datetime] = None
    blocked: bool = False
    blocked_reason: Optional[str] = None
    call_count: int = 0
    version: int = 0
    invoice_ref: Optional[str] = None

    @property
    def total_minutes_used(self) -> Decimal:
        return self.included_minutes_used + self.overage_minutes_used

    @property
    def is_billed(self) -> bool:
        return self.invoice_ref is not None


@dataclass(frozen=True)
class UsageDelta:
    """Increment applied to a period by a single usage event."""
    included_minutes: Decimal
    overage_minutes: Decimal
    charge: int
    blocked_reason: Optional[str] = None


@dataclass(frozen=True)
class UsageTransaction:
    """Immutable record of one usage event.

    ``source_id`` is the idempotency key per tenant. The post-update totals
    are stored so a replayed event returns exactly the original result.
    Once written, these records must never be modified.
    """
    tenant_id: str
    source_id: str
    period_id: int
    seconds_used: int
    minutes_used: Decimal
    included_minutes: Decimal
    overage_minutes: Decimal
    charge: int
    included_total: Decimal
    overage_total: Decimal
    overage_charge_total: int
    usage_percent: Decimal
    crossed_limit: bool
    recorded_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @property
    def is_overage(self) -> bool:
        return self.overage_minutes > 0


@dataclass(frozen=True)
class InsertOutcome:
    """Result of a conditional insert guarded by a uniqueness constraint."""
    inserted: bool
    existing: Optional[UsageTransaction] = None


@dataclass(frozen=True)
class Alert:
    """A threshold alert raised for a tenant within a billing period."""
    tenant_id: str
    threshold: int
    severity: str
    title: str
    message: str
    period_start: datetime
    usage_percent: Decimal
    minutes_used: Decimal
    included_minutes: int
    overage_minutes: Decimal
    overage_charge: int
    created_at: datetime
    channels_attempted: Tuple[str, ...] = ()
    channels_confirmed: Tuple[str, ...] = ()
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class InAppNotification:
    """Notification shown to the tenant inside the product."""
    tenant_id: str
    kind: str
    title: str
    message: str
    severity: str
    created_at: datetime
    alert_id: Optional[int] = None
    read: bool = False
    id: Optional[int] = None
