"""
Abstract billing event vocabulary consumed by the subscription ledger.

Provider payloads are mapped onto a closed set of event types. Anything the
ledger does not act on becomes an UnrecognizedEvent, which is acknowledged
but never applied.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union


class LedgerEventType(str, enum.Enum):
    """Closed set of subscription lifecycle events."""
    CREATED = "created"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECOVERED = "payment_recovered"
    CANCEL_SCHEDULED = "cancel_scheduled"
    RESUMED = "resumed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class LedgerEvent:
    """A verified event the ledger can apply."""

    event_type: LedgerEventType
    event_id: str
    provider_subscription_id: str
    account_id: str
    occurred_at: datetime
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    renews_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    provider_event_name: Optional[str] = None


@dataclass(frozen=True)
class UnrecognizedEvent:
    """A verified event the ledger deliberately ignores."""

    event_id: str
    provider_event_name: str


ParsedEvent = Union[LedgerEvent, UnrecognizedEvent]
