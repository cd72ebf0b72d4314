"""
Lemon Squeezy webhook handler for subscription events.

SECURITY:
- Every delivery MUST verify the X-Signature HMAC over the raw body
- No session authentication (webhooks come from the provider, not users)
- account_id is taken from the signed payload's custom data only

Responses:
- 200: acknowledged (applied, ignored, or unrecognized event)
- 401: signature mismatch (never processed)
- 400: signed but malformed payload
- 500: processing fault; the provider retries and the retry is idempotent
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from saas_gate.billing.errors import ProcessingError, SignatureMismatch, WebhookPayloadError
from saas_gate.billing.webhook import SIGNATURE_HEADER, LemonSqueezyWebhookVerifier, WebhookProcessor
from saas_gate.middleware.rate_limit import rate_limit_dependency
from saas_gate.platform.errors import ProcessingFailedError, ValidationError, WebhookSignatureError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/lemonsqueezy", tags=["webhooks"])


def get_webhook_verifier(request: Request) -> LemonSqueezyWebhookVerifier:
    return request.app.state.webhook_verifier


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor


@router.post("/events")
async def handle_event(
    request: Request,
    x_signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
    _rate_limit=Depends(rate_limit_dependency("webhooks.lemonsqueezy")),
):
    """
    Verify and apply a subscription event.

    The body is read as raw bytes; parsing happens only after the
    signature has been checked.
    """
    body = await request.body()

    try:
        event = get_webhook_verifier(request).verify(body, x_signature)
    except SignatureMismatch as e:
        logger.warning("Invalid webhook signature", extra={
            "path": request.url.path,
            "reason": e.reason,
        })
        raise WebhookSignatureError() from e
    except WebhookPayloadError as e:
        logger.error("Invalid webhook payload", extra={
            "path": request.url.path,
            "field": e.field,
            "error": str(e),
        })
        raise ValidationError(str(e), details={"field": e.field} if e.field else None) from e

    logger.info("Received subscription webhook", extra={
        "event_id": event.event_id,
        "event_name": event.provider_event_name,
    })

    try:
        ack = get_webhook_processor(request).process(event)
    except ProcessingError as e:
        raise ProcessingFailedError("Webhook could not be processed") from e

    return ack.to_dict()
