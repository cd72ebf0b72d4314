"""
Subscription ledger tables.

- subscriptions: one row per provider subscription id, never deleted,
  only transitioned to the terminal CANCELLED status; at most one live
  (active, past_due, cancelling) row per account
- processed_webhook_events: one row per applied event id; the primary key
  is what makes event application idempotent
"""

import enum
import uuid

from sqlalchemy import Column, Index, Integer, String, text

from saas_gate.models.base import Base, TimestampMixin, UTCDateTime, utcnow


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle status. "none" is the absence of a row."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLING = "cancelling"  # Cancellation scheduled for ends_at
    CANCELLED = "cancelled"  # Terminal for this provider subscription id


LIVE_STATUS_PREDICATE = "status IN ('active', 'past_due', 'cancelling')"


class Subscription(Base, TimestampMixin):
    """Per-account subscription state, mutated only by the webhook processor."""

    __tablename__ = "subscriptions"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )
    account_id = Column(
        String(255),
        nullable=False,
        comment="Owning account (referenced, not owned)"
    )
    provider_subscription_id = Column(
        String(255),
        nullable=False,
        unique=True,
        comment="Billing provider subscription id"
    )
    product_id = Column(Integer, nullable=True)
    variant_id = Column(Integer, nullable=True)
    status = Column(
        String(50),
        nullable=False,
        default=SubscriptionStatus.ACTIVE.value,
    )
    current_period_end = Column(UTCDateTime(), nullable=True, comment="Next renewal")
    ends_at = Column(UTCDateTime(), nullable=True, comment="Scheduled end when cancelling")
    cancellation_reason = Column(String(50), nullable=True, comment="Why the ledger cancelled it, e.g. superseded")

    # Ordering and idempotency guards for webhook application
    last_event_at = Column(UTCDateTime(), nullable=False)
    last_event_id = Column(String(255), nullable=False)

    __table_args__ = (
        Index("ix_subscriptions_account_id", "account_id"),
        Index("ix_subscriptions_status_ends_at", "status", "ends_at"),
        # At most one live subscription per account
        Index(
            "uq_subscriptions_live_account",
            "account_id",
            unique=True,
            sqlite_where=text(LIVE_STATUS_PREDICATE),
            postgresql_where=text(LIVE_STATUS_PREDICATE),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, account_id={self.account_id}, "
            f"provider_subscription_id={self.provider_subscription_id}, status={self.status})>"
        )


class ProcessedWebhookEvent(Base):
    """Record of an applied webhook event id."""

    __tablename__ = "processed_webhook_events"

    event_id = Column(String(255), primary_key=True)
    provider_subscription_id = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    occurred_at = Column(UTCDateTime(), nullable=False)
    applied_at = Column(UTCDateTime(), nullable=False, default=utcnow)
