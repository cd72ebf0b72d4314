"""
Entitlement API routes.

Every call re-reads the subscription ledger; there is no cache, so a
processed webhook is reflected on the next request.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from saas_gate.api.dependencies.auth import require_session
from saas_gate.api.dependencies.entitlements import evaluate_entitlement
from saas_gate.middleware.rate_limit import rate_limit_dependency
from saas_gate.sessions.authenticator import AuthenticatedIdentity

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


class EntitlementResponse(BaseModel):
    account_id: str
    plan: str
    status: str
    frequency: str
    entitled: bool
    current_period_end: Optional[datetime] = None


@router.get("/me", response_model=EntitlementResponse)
async def get_my_entitlement(
    request: Request,
    _rate_limit=Depends(rate_limit_dependency("entitlements.me")),
    identity: AuthenticatedIdentity = Depends(require_session),
):
    """Return the caller's plan and whether paid features are unlocked."""
    entitlement = evaluate_entitlement(request, identity.account_id)
    return EntitlementResponse(
        account_id=entitlement.account_id,
        plan=entitlement.plan.value,
        status=entitlement.status,
        frequency=entitlement.frequency.value,
        entitled=entitlement.entitled,
        current_period_end=entitlement.current_period_end,
    )
