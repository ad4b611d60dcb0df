"""
Outbound webhook alert channel.
"""

from typing import Any, Dict, Optional

import httpx

from minute_guard.config.loader import AlertChannelKind, LimitConfig
from minute_guard.core.errors import ChannelDeliveryFailure
from minute_guard.storage.models import Alert

from .base import AlertChannel

EVENT_NAME = "usage_alert"


def build_payload(alert: Alert) -> Dict[str, Any]:
    """JSON body posted to the tenant's webhook."""
    return {
        "event": EVENT_NAME,
        "timestamp": alert.created_at.isoformat(),
        "data": {
            "alert_id": alert.id,
            "tenant_id": alert.tenant_id,
            "threshold": alert.threshold,
            "severity": alert.severity,
            "title": alert.title,
            "message": alert.message,
            "usage_percent": float(alert.usage_percent),
            "minutes_used": float(alert.minutes_used),
            "included_minutes": alert.included_minutes,
            "overage_minutes": float(alert.overage_minutes),
            "overage_charge": alert.overage_charge,
        },
    }


class WebhookChannel(AlertChannel):
    """POSTs alerts as JSON to the tenant's webhook URL.

    Any non-2xx response, timeout or transport error is a delivery failure.
    """

    kind = AlertChannelKind.WEBHOOK

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = 5.0):
        self.client = client or httpx.Client(timeout=timeout)

    def deliver(self, alert: Alert, config: LimitConfig) -> bool:
        if not config.webhook_url:
            raise ChannelDeliveryFailure(self.name, "no webhook URL configured")
        try:
            response = self.client.post(
                config.webhook_url,
                json=build_payload(alert),
                headers={"X-Minute-Guard-Event": EVENT_NAME},
            )
        except httpx.HTTPError as e:
            raise ChannelDeliveryFailure(self.name, str(e)) from e
        if not response.is_success:
            raise ChannelDeliveryFailure(self.name, f"HTTP {response.status_code}")
        return True

    def close(self) -> None:
        self.client.close()
