"""
Billing error hierarchy.

Provides:
- BillingError: base for all billing failures
- SignatureMismatch: webhook body/signature did not verify (never processed)
- WebhookPayloadError: signed payload is structurally unusable
- ProcessingError: unexpected fault applying an event (provider should retry)
- LedgerError: the ledger database failed
- EntitlementEvaluationError: entitlement could not be evaluated (fail closed)
"""

from typing import Optional


class BillingError(Exception):
    """Base exception for billing-related failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class SignatureMismatch(BillingError):
    """Raised when the webhook HMAC does not match the raw body."""

    def __init__(self, reason: str = "invalid signature"):
        self.reason = reason
        self.error_code = "SIGNATURE_MISMATCH"
        super().__init__(reason)


class WebhookPayloadError(BillingError):
    """Raised when a verified webhook body cannot be interpreted."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.error_code = "WEBHOOK_PAYLOAD_INVALID"
        super().__init__(message)

    def to_dict(self) -> dict:
        d: dict = {"error": self.error_code, "message": str(self)}
        if self.field is not None:
            d["field"] = self.field
        return d


class LedgerError(BillingError):
    """Raised when the ledger database cannot be read or written."""

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Subscription ledger failed during {operation}")


class ProcessingError(BillingError):
    """
    Raised when a verified event could not be applied.

    Carries the event id so the failure can be correlated with provider
    redeliveries.
    """

    def __init__(self, event_id: str, detail: str, cause: Optional[Exception] = None):
        self.event_id = event_id
        self.detail = detail
        self.cause = cause
        self.error_code = "WEBHOOK_PROCESSING_FAILED"
        super().__init__(f"Failed to process webhook event {event_id}: {detail}")


class EntitlementEvaluationError(BillingError):
    """
    Raised when entitlement evaluation fails (fail-closed).

    Carries a machine-readable error_code for the UI to display.
    """

    def __init__(self, account_id: str, detail: str, cause: Optional[Exception] = None):
        self.account_id = account_id
        self.detail = detail
        self.cause = cause
        self.error_code = "ENTITLEMENT_EVAL_FAILED"
        super().__init__(f"Entitlement evaluation failed for {account_id}: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.detail,
            "account_id": self.account_id,
        }
