"""
Minute accounting and overage pricing.

Splits consumption into included and overage portions and prices the
overage against the tenant's unit price and charge cap.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_UP
from typing import Optional

from minute_guard.config.loader import LimitConfig, PolicyMode
from minute_guard.storage.models import UsageDelta, UsagePeriod

# Minutes are tracked to the micro-minute; fixed scale keeps sums exact.
MINUTE_QUANTUM = Decimal("0.000001")

BLOCK_REASON_EXHAUSTED = "included_minutes_exhausted"
BLOCK_REASON_CAP = "overage_cap_reached"


@dataclass(frozen=True)
class UsageSplit:
    """How one usage event lands on a period."""
    minutes: Decimal
    included_minutes: Decimal
    overage_minutes: Decimal
    raw_charge: int
    charge: int
    blocked_reason: Optional[str] = None

    @property
    def delta(self) -> UsageDelta:
        return UsageDelta(
            included_minutes=self.included_minutes,
            overage_minutes=self.overage_minutes,
            charge=self.charge,
            blocked_reason=self.blocked_reason
        )


def seconds_to_minutes(seconds: int) -> Decimal:
    """Convert seconds to fractional minutes. Never rounds up to whole minutes."""
    return (Decimal(seconds) / Decimal(60)).quantize(MINUTE_QUANTUM, rounding=ROUND_HALF_EVEN)


def remaining_included(config: LimitConfig, included_used: Decimal) -> Decimal:
    return max(Decimal("0"), Decimal(config.included_minutes) - included_used)


def usage_percent(config: LimitConfig, included_used: Decimal) -> Decimal:
    """Share of the included allotment used, in percent. 0 when nothing is included."""
    if config.included_minutes <= 0:
        return Decimal("0")
    return included_used / Decimal(config.included_minutes) * Decimal(100)


def overage_charge(overage_minutes: Decimal, unit_price: Decimal) -> int:
    """Price overage minutes in whole minor units, rounding UP."""
    raw = overage_minutes * unit_price
    return int(raw.quantize(Decimal("1"), rounding=ROUND_UP))


def is_at_limit(config: LimitConfig, included_used: Decimal, overage_used: Decimal) -> bool:
    """Whether the included allotment is exhausted."""
    if overage_used > 0:
        return True
    return config.included_minutes > 0 and included_used >= config.included_minutes


def split_usage(config: LimitConfig, period: UsagePeriod, minutes: Decimal) -> UsageSplit:
    """Split ``minutes`` into included and overage portions for ``period``.

    The overage is always recorded in full; only the money is capped. Once
    the cap is reached the marginal charge is 0 but the minutes still count
    as overage.

    Args:
        config: Tenant limit configuration
        period: Period state the usage applies to
        minutes: Consumed minutes

    Returns:
        UsageSplit with portions, marginal charge and any block reason
    """
    included = min(minutes, remaining_included(config, period.included_minutes_used))
    overage = minutes - included

    raw_charge = overage_charge(overage, config.overage_price) if overage > 0 else 0
    charge = raw_charge
    if config.has_charge_cap:
        headroom = max(0, config.max_overage_charge - period.overage_charge)
        charge = min(raw_charge, headroom)

    new_included = period.included_minutes_used + included
    new_overage = period.overage_minutes_used + overage
    new_charge = period.overage_charge + charge

    blocked_reason = None
    if config.policy == PolicyMode.BLOCK and is_at_limit(config, new_included, new_overage):
        blocked_reason = BLOCK_REASON_EXHAUSTED
    elif (config.policy == PolicyMode.CHARGE and config.has_charge_cap
            and new_charge >= config.max_overage_charge):
        blocked_reason = BLOCK_REASON_CAP

    return UsageSplit(
        minutes=minutes,
        included_minutes=included,
        overage_minutes=overage,
        raw_charge=raw_charge,
        charge=charge,
        blocked_reason=blocked_reason
    )
