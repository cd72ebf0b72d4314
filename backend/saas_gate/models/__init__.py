"""
Database models for the subscription ledger.
"""

from saas_gate.models.base import Base, TimestampMixin, UTCDateTime
from saas_gate.models.subscription import ProcessedWebhookEvent, Subscription, SubscriptionStatus

__all__ = [
    "Base",
    "ProcessedWebhookEvent",
    "Subscription",
    "SubscriptionStatus",
    "TimestampMixin",
    "UTCDateTime",
]
