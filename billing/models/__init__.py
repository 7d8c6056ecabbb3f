"""SQLAlchemy models for the billing service."""

from .base import Base
from .subscription import Subscription
from .webhook_event import WebhookEvent
from .lease import Lease

__all__ = [
    "Base",
    "Subscription",
    "WebhookEvent",
    "Lease",
]
