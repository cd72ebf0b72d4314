"""
Billing: subscription ledger, webhook verification and entitlements.
"""

from saas_gate.billing.entitlements import Entitlement, EntitlementService, Frequency, Plan
from saas_gate.billing.errors import (
    BillingError,
    EntitlementEvaluationError,
    LedgerError,
    ProcessingError,
    SignatureMismatch,
    WebhookPayloadError,
)
from saas_gate.billing.events import LedgerEvent, LedgerEventType, ParsedEvent, UnrecognizedEvent
from saas_gate.billing.ledger import (
    Applied,
    IgnoreReason,
    Ignored,
    SubscriptionLedger,
    SubscriptionState,
)
from saas_gate.billing.webhook import (
    SIGNATURE_HEADER,
    LemonSqueezyWebhookVerifier,
    WebhookAck,
    WebhookProcessor,
)

__all__ = [
    "Applied",
    "BillingError",
    "Entitlement",
    "EntitlementEvaluationError",
    "EntitlementService",
    "Frequency",
    "IgnoreReason",
    "Ignored",
    "LedgerError",
    "LedgerEvent",
    "LedgerEventType",
    "LemonSqueezyWebhookVerifier",
    "ParsedEvent",
    "Plan",
    "ProcessingError",
    "SIGNATURE_HEADER",
    "SignatureMismatch",
    "SubscriptionLedger",
    "SubscriptionState",
    "UnrecognizedEvent",
    "WebhookAck",
    "WebhookPayloadError",
    "WebhookProcessor",
]
