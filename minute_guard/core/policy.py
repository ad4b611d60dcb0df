"""
Limit policy evaluation.

Decides whether a new usage-consuming action may start. Evaluation is
read-only: the accounting in the recorder always tracks true consumption,
and callers are expected to refuse the action on a BLOCK decision.

Decision Order:
1. notify_only - always permitted, overage is only reported
2. Below the included allotment - permitted
3. block policy at or past the allotment - blocked
4. charge policy - charged until the overage cap is reached, then blocked
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from minute_guard.config.loader import LimitConfig, PolicyMode
from minute_guard.storage.models import UsagePeriod
from minute_guard.storage.repository import SqliteUsageStore

from .accounting import BLOCK_REASON_CAP, BLOCK_REASON_EXHAUSTED, remaining_included, usage_percent
from .periods import utc_now
from .recorder import resolve_current_period


class LimitDecision(Enum):
    """Pre-check outcome for a usage-consuming action."""
    PERMIT = "permit"
    CHARGE = "charge"
    BLOCK = "block"


@dataclass(frozen=True)
class CheckResult:
    """Limit decision plus the figures a caller needs to explain it."""
    decision: LimitDecision
    policy: PolicyMode
    usage_percent: Decimal
    remaining_included: Decimal
    included_minutes: int
    included_minutes_used: Decimal
    overage_minutes: Decimal
    overage_charge: int
    max_overage_charge: int
    overage_price: Decimal
    reason: Optional[str] = None
    message: str = ""
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @property
    def can_proceed(self) -> bool:
        return self.decision != LimitDecision.BLOCK


def evaluate_policy(config: LimitConfig, period: UsagePeriod) -> CheckResult:
    """Evaluate the tenant's policy against the period state.

    Args:
        config: Tenant limit configuration
        period: Current usage period

    Returns:
        CheckResult; a BLOCK decision always carries a non-empty reason
    """
    percent = usage_percent(config, period.included_minutes_used)
    remaining = remaining_included(config, period.included_minutes_used)
    # An included allotment of 0 means every minute is overage.
    at_limit = percent >= 100 or config.included_minutes == 0

    decision = LimitDecision.PERMIT
    reason = None
    message = f"{remaining:.1f} included minutes remaining"

    if config.policy == PolicyMode.NOTIFY_ONLY:
        if at_limit:
            message = (
                f"Included minutes exhausted; {period.overage_minutes_used:.1f} "
                f"overage minutes recorded"
            )
    elif at_limit and config.policy == PolicyMode.BLOCK:
        decision = LimitDecision.BLOCK
        reason = BLOCK_REASON_EXHAUSTED
        message = (
            f"All {config.included_minutes} included minutes are used "
            f"({period.overage_minutes_used:.1f} overage minutes recorded); "
            f"further usage is blocked by policy"
        )
    elif at_limit and config.policy == PolicyMode.CHARGE:
        if config.has_charge_cap and period.overage_charge >= config.max_overage_charge:
            decision = LimitDecision.BLOCK
            reason = BLOCK_REASON_CAP
            message = (
                f"Overage charge of {period.overage_charge} reached the cap of "
                f"{config.max_overage_charge}; further usage is blocked"
            )
        else:
            decision = LimitDecision.CHARGE
            message = (
                f"Included minutes exhausted; additional minutes are charged at "
                f"{config.overage_price} per minute"
            )

    return CheckResult(
        decision=decision,
        policy=config.policy,
        usage_percent=percent,
        remaining_included=remaining,
        included_minutes=config.included_minutes,
        included_minutes_used=period.included_minutes_used,
        overage_minutes=period.overage_minutes_used,
        overage_charge=period.overage_charge,
        max_overage_charge=config.max_overage_charge,
        overage_price=config.overage_price,
        reason=reason,
        message=message,
        period_start=period.period_start,
        period_end=period.period_end
    )


class PolicyEvaluator:
    """Loads tenant state and evaluates the limit policy."""

    def __init__(
        self,
        store: SqliteUsageStore,
        config_provider,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.config_provider = config_provider
        self.clock = clock

    def check_limit(self, tenant_id: str) -> CheckResult:
        """Pre-check whether the tenant may start a new usage-consuming action.

        Raises:
            PeriodUnresolvable: If the tenant has no limit config
        """
        config = self.config_provider.get_limit_config(tenant_id)
        period = resolve_current_period(self.store, tenant_id, self.clock())
        return evaluate_policy(config, period)
