"""
Threshold crossing detection.

The threshold ladder is a one-way ratchet per billing period: a threshold
fires at most once, and a jump over several thresholds reports only the
highest one.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Sequence


class AlertSeverity(Enum):
    """Severity levels for threshold alerts."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ThresholdTemplate:
    """Fixed title and message copy for a threshold."""
    severity: AlertSeverity
    title: str
    message: str


# Placeholders: percent, remaining, overage, charge
THRESHOLD_TEMPLATES = {
    70: ThresholdTemplate(
        severity=AlertSeverity.INFO,
        title="Moderate call-minute usage",
        message=(
            "You have used {percent}% of your included call minutes. "
            "About {remaining} minutes remain."
        ),
    ),
    85: ThresholdTemplate(
        severity=AlertSeverity.WARNING,
        title="Approaching your minute limit",
        message=(
            "You have used {percent}% of your included call minutes. "
            "Only {remaining} included minutes remain."
        ),
    ),
    95: ThresholdTemplate(
        severity=AlertSeverity.WARNING,
        title="Call minutes almost exhausted",
        message=(
            "You have used {percent}% of your included call minutes. "
            "Once the remaining {remaining} minutes are used, overage charges apply."
        ),
    ),
    100: ThresholdTemplate(
        severity=AlertSeverity.CRITICAL,
        title="Minute limit reached",
        message=(
            "You have reached your included call minutes. "
            "{overage} overage minutes so far, for a charge of {charge}."
        ),
    ),
}


def severity_for(threshold: int) -> AlertSeverity:
    """Severity for a threshold, falling back to bands for custom ladders."""
    template = THRESHOLD_TEMPLATES.get(threshold)
    if template is not None:
        return template.severity
    if threshold >= 100:
        return AlertSeverity.CRITICAL
    if threshold >= 85:
        return AlertSeverity.WARNING
    return AlertSeverity.INFO


def template_for(threshold: int) -> ThresholdTemplate:
    """Template for a threshold; custom values borrow the nearest lower band's copy."""
    template = THRESHOLD_TEMPLATES.get(threshold)
    if template is not None:
        return template
    severity = severity_for(threshold)
    if severity == AlertSeverity.CRITICAL:
        base = THRESHOLD_TEMPLATES[100]
    elif severity == AlertSeverity.WARNING:
        base = THRESHOLD_TEMPLATES[85]
    else:
        base = THRESHOLD_TEMPLATES[70]
    return ThresholdTemplate(
        severity=severity,
        title=f"{threshold}% of call minutes used",
        message=base.message
    )


def detect_crossed_threshold(
    ladder: Sequence[int],
    usage_percent: Decimal,
    last_alerted: Optional[int]
) -> Optional[int]:
    """Find the newly crossed threshold, if any.

    Returns the highest ``t`` in ``ladder`` with ``usage_percent >= t`` that
    is above ``last_alerted``. Only one threshold is reported per call.

    Args:
        ladder: Ascending threshold percentages
        usage_percent: Post-update usage percentage
        last_alerted: Highest threshold already alerted this period

    Returns:
        The threshold to alert on, or None
    """
    for threshold in sorted(ladder, reverse=True):
        if usage_percent >= threshold and (last_alerted is None or threshold > last_alerted):
            return threshold
    return None
