"""
In-app notification channel.
"""

from minute_guard.config.loader import AlertChannelKind, LimitConfig
from minute_guard.storage.models import Alert, InAppNotification
from minute_guard.storage.repository import SqliteUsageStore

from .base import AlertChannel

NOTIFICATION_KIND = "usage_alert"


class InAppChannel(AlertChannel):
    """Writes the alert to the tenant's in-app notification feed."""

    kind = AlertChannelKind.IN_APP

    def __init__(self, store: SqliteUsageStore):
        self.store = store

    def deliver(self, alert: Alert, config: LimitConfig) -> bool:
        self.store.insert_notification(InAppNotification(
            tenant_id=alert.tenant_id,
            kind=NOTIFICATION_KIND,
            title=alert.title,
            message=alert.message,
            severity=alert.severity,
            created_at=alert.created_at,
            alert_id=alert.id
        ))
        return True
