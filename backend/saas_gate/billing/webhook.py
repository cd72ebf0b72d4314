"""
Lemon Squeezy webhook verification and processing.

SECURITY:
- The HMAC-SHA256 signature (X-Signature, hex) is recomputed over the exact
  raw request bytes and compared in constant time BEFORE the body is parsed
- Bodies must reach verify() unmodified; re-serialised JSON will not verify
- account_id comes from meta.custom_data.customer_id set at checkout
- subscription_payment_* events carry a subscription-invoices object whose
  attributes.subscription_id names the subscription

Processing is safe to retry: every delivery is re-verified and re-applied,
and the ledger's processed-event table makes re-application a no-op.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from saas_gate.billing.errors import LedgerError, ProcessingError, SignatureMismatch, WebhookPayloadError
from saas_gate.billing.events import LedgerEvent, LedgerEventType, ParsedEvent, UnrecognizedEvent
from saas_gate.billing.ledger import Applied, SubscriptionLedger

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"
INVOICE_OBJECT_TYPE = "subscription-invoices"
MAX_ACCOUNT_ID_LENGTH = 100

EVENT_NAME_MAP = {
    "subscription_created": LedgerEventType.CREATED,
    "subscription_payment_failed": LedgerEventType.PAYMENT_FAILED,
    "subscription_payment_recovered": LedgerEventType.PAYMENT_RECOVERED,
    "subscription_payment_success": LedgerEventType.PAYMENT_RECOVERED,
    "subscription_cancelled": LedgerEventType.CANCEL_SCHEDULED,
    "subscription_resumed": LedgerEventType.RESUMED,
    "subscription_expired": LedgerEventType.CANCELLED,
}

# subscription_updated carries the new status instead of a dedicated event name
UPDATED_STATUS_MAP = {
    "active": LedgerEventType.PAYMENT_RECOVERED,
    "past_due": LedgerEventType.PAYMENT_FAILED,
    "unpaid": LedgerEventType.PAYMENT_FAILED,
    "cancelled": LedgerEventType.CANCEL_SCHEDULED,
    "expired": LedgerEventType.CANCELLED,
}


def parse_timestamp(value: Any, field: str, required: bool = False) -> Optional[datetime]:
    """Parse a provider ISO-8601 timestamp into an aware UTC datetime."""
    if value in (None, ""):
        if required:
            raise WebhookPayloadError(f"missing {field}", field=field)
        return None
    if not isinstance(value, str):
        raise WebhookPayloadError(f"{field} must be a string", field=field)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise WebhookPayloadError(f"{field} is not an ISO-8601 timestamp", field=field) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _optional_int(value: Any, field: str) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise WebhookPayloadError(f"{field} must be an integer", field=field) from e


class LemonSqueezyWebhookVerifier:
    """Authenticates webhook bodies and maps them onto ledger events."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("webhook secret is required")
        self._secret = secret.encode("utf-8")

    def compute_signature(self, raw_body: bytes) -> str:
        """Hex HMAC-SHA256 of the raw body."""
        return hmac.new(self._secret, raw_body, hashlib.sha256).hexdigest()

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> ParsedEvent:
        """
        Verify the signature, then parse the body.

        Raises:
            SignatureMismatch: Missing or wrong signature (body is never parsed)
            WebhookPayloadError: Signed body is not a usable event
        """
        if not signature_header:
            raise SignatureMismatch("missing signature")

        expected = self.compute_signature(raw_body)
        provided = signature_header.strip().lower()
        if not hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8")):
            raise SignatureMismatch()

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WebhookPayloadError("body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise WebhookPayloadError("body must be a JSON object")

        return self.parse_event(payload, raw_body)

    def parse_event(self, payload: Dict[str, Any], raw_body: bytes) -> ParsedEvent:
        """Map a verified payload onto the closed event vocabulary."""
        meta = payload.get("meta")
        if not isinstance(meta, dict):
            raise WebhookPayloadError("missing meta", field="meta")

        event_name = meta.get("event_name")
        if not isinstance(event_name, str) or not event_name:
            raise WebhookPayloadError("missing meta.event_name", field="meta.event_name")

        # Byte-identical redeliveries share a content-derived id
        event_id = meta.get("event_id") or f"sha256:{hashlib.sha256(raw_body).hexdigest()}"

        data = payload.get("data")
        attributes = data.get("attributes") if isinstance(data, dict) else None

        event_type = EVENT_NAME_MAP.get(event_name)
        if event_name == "subscription_updated" and isinstance(attributes, dict):
            event_type = UPDATED_STATUS_MAP.get(str(attributes.get("status", "")))

        if event_type is None:
            return UnrecognizedEvent(event_id=str(event_id), provider_event_name=event_name)

        if not isinstance(data, dict) or not isinstance(attributes, dict):
            raise WebhookPayloadError("missing data.attributes", field="data.attributes")

        # Payment events carry the invoice; its subscription is an attribute
        if data.get("type") == INVOICE_OBJECT_TYPE:
            subscription_id = attributes.get("subscription_id")
            subscription_field = "data.attributes.subscription_id"
        else:
            subscription_id = data.get("id")
            subscription_field = "data.id"
        if subscription_id in (None, ""):
            raise WebhookPayloadError(f"missing {subscription_field}", field=subscription_field)

        custom_data = meta.get("custom_data") or {}
        account_id = custom_data.get("customer_id") if isinstance(custom_data, dict) else None
        account_id = str(account_id) if account_id is not None else ""
        if len(account_id) > MAX_ACCOUNT_ID_LENGTH or (event_type is LedgerEventType.CREATED and not account_id):
            raise WebhookPayloadError("invalid meta.custom_data.customer_id", field="meta.custom_data.customer_id")

        return LedgerEvent(
            event_type=event_type,
            event_id=str(event_id),
            provider_subscription_id=str(subscription_id),
            account_id=account_id,
            occurred_at=parse_timestamp(attributes.get("updated_at"), "data.attributes.updated_at", required=True),
            product_id=_optional_int(attributes.get("product_id"), "data.attributes.product_id"),
            variant_id=_optional_int(attributes.get("variant_id"), "data.attributes.variant_id"),
            renews_at=parse_timestamp(attributes.get("renews_at"), "data.attributes.renews_at"),
            ends_at=parse_timestamp(attributes.get("ends_at"), "data.attributes.ends_at"),
            provider_event_name=event_name,
        )


@dataclass(frozen=True)
class WebhookAck:
    """Acknowledgement returned to the provider (always 2xx)."""

    event_id: str
    outcome: str
    applied: bool
    status: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"status": "processed", "event_id": self.event_id, "outcome": self.outcome, "applied": self.applied}
        if self.status is not None:
            d["subscription_status"] = self.status
        return d


class WebhookProcessor:
    """Applies verified events to the ledger."""

    def __init__(self, ledger: SubscriptionLedger):
        self._ledger = ledger

    def process(self, event: ParsedEvent) -> WebhookAck:
        """
        Apply an event and describe the outcome.

        Unrecognized events are acknowledged but not applied so the provider
        does not redeliver them.

        Raises:
            ProcessingError: The ledger could not be updated (provider should retry)
        """
        if isinstance(event, UnrecognizedEvent):
            logger.info(
                "Acknowledged unrecognized webhook event",
                extra={"event_id": event.event_id, "event_name": event.provider_event_name},
            )
            return WebhookAck(event_id=event.event_id, outcome="unrecognized", applied=False)

        try:
            result = self._ledger.apply_event(event)
        except LedgerError as e:
            logger.error(
                "Failed to apply webhook event",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.event_type.value,
                    "provider_subscription_id": event.provider_subscription_id,
                },
                exc_info=True,
            )
            raise ProcessingError(event.event_id, "ledger update failed", cause=e) from e

        if isinstance(result, Applied):
            return WebhookAck(
                event_id=event.event_id,
                outcome="applied",
                applied=True,
                status=result.status.value,
            )
        return WebhookAck(event_id=event.event_id, outcome=result.reason.value, applied=False)
