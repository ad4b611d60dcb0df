"""
Alert channel interface.
"""

from abc import ABC, abstractmethod

from minute_guard.config.loader import AlertChannelKind, LimitConfig
from minute_guard.storage.models import Alert


class AlertChannel(ABC):
    """A destination an alert can be delivered to.

    ``deliver`` returns True on success. A failure is either a False return
    or a raised ``ChannelDeliveryFailure``; the dispatcher treats any
    exception as that channel's failure.
    """

    kind: AlertChannelKind

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    def deliver(self, alert: Alert, config: LimitConfig) -> bool:
        """Deliver ``alert`` using the tenant's channel settings."""
