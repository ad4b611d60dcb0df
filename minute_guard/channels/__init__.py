"""
Alert delivery channels.

Each channel delivers one alert independently of the others.
"""

from .base import AlertChannel
from .mail import EmailChannel
from .in_app import InAppChannel
from .webhook import WebhookChannel

__all__ = ["AlertChannel", "EmailChannel", "InAppChannel", "WebhookChannel"]
