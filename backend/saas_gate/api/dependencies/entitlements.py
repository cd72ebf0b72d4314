"""
Entitlement check dependencies.

FastAPI dependencies that block access when the caller has no paid plan.
Evaluation failures fail closed with 503.
"""

import logging

from fastapi import Depends, Request

from saas_gate.api.dependencies.auth import require_session
from saas_gate.billing.entitlements import Entitlement, EntitlementService
from saas_gate.billing.errors import EntitlementEvaluationError
from saas_gate.platform.errors import PaymentRequiredError, ServiceUnavailableError
from saas_gate.sessions.authenticator import AuthenticatedIdentity

logger = logging.getLogger(__name__)


def get_entitlement_service(request: Request) -> EntitlementService:
    return request.app.state.entitlement_service


def evaluate_entitlement(request: Request, account_id: str) -> Entitlement:
    """Evaluate, translating ledger failures into a 503."""
    try:
        return get_entitlement_service(request).get_entitlement(account_id)
    except EntitlementEvaluationError as e:
        logger.warning(
            "Entitlement evaluation failed",
            extra={"account_id": account_id, "path": request.url.path},
        )
        raise ServiceUnavailableError(message=e.detail, code=e.error_code) from e


async def require_entitlement(
    request: Request,
    identity: AuthenticatedIdentity = Depends(require_session),
) -> Entitlement:
    """
    FastAPI dependency: the caller's entitlement, 402 when not entitled.
    """
    entitlement = evaluate_entitlement(request, identity.account_id)
    if not entitlement.entitled:
        logger.warning(
            "Paid feature access denied - not entitled",
            extra={
                "account_id": identity.account_id,
                "subscription_status": entitlement.status,
                "path": request.url.path,
            },
        )
        raise PaymentRequiredError(
            details={"plan": entitlement.plan.value, "status": entitlement.status},
        )
    return entitlement
