"""
Entitlement evaluation.

Derives an account's plan and paid access from its subscription in the
ledger. Every call re-reads the ledger so a webhook's effect is visible on
the next request.

Access rules:
- active, cancelling  -> entitled (cancelling keeps access until the period ends)
- past_due, cancelled -> not entitled (payment failure downgrades immediately)
- no subscription     -> free plan, not entitled
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from saas_gate.billing.errors import EntitlementEvaluationError, LedgerError
from saas_gate.billing.ledger import SubscriptionLedger, SubscriptionState
from saas_gate.config.settings import ProductSettings
from saas_gate.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLING})


class Plan(str, Enum):
    """Plan tiers."""
    FREE = "free"
    PRO = "pro"


class Frequency(str, Enum):
    """Billing frequency of a paid plan."""
    MONTHLY = "monthly"
    ANNUALLY = "annually"
    UNDEFINED = "undefined"


@dataclass(frozen=True)
class Entitlement:
    """Result of an entitlement evaluation."""

    account_id: str
    plan: Plan
    status: str
    frequency: Frequency
    entitled: bool
    current_period_end: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "plan": self.plan.value,
            "status": self.status,
            "frequency": self.frequency.value,
            "entitled": self.entitled,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
        }


class EntitlementService:
    """Computes entitlements from the subscription ledger."""

    def __init__(self, ledger: SubscriptionLedger, products: ProductSettings):
        self._ledger = ledger
        self._products = products

    def get_entitlement(self, account_id: str) -> Entitlement:
        """
        Evaluate the account's entitlement.

        Raises:
            EntitlementEvaluationError: If the ledger cannot be read (fail closed)
        """
        try:
            subscription = self._ledger.get(account_id)
        except LedgerError as e:
            logger.error(
                "Entitlement evaluation failed",
                extra={"account_id": account_id, "operation": e.operation},
            )
            raise EntitlementEvaluationError(account_id, "subscription ledger unavailable", cause=e) from e

        if subscription is None:
            return Entitlement(
                account_id=account_id,
                plan=Plan.FREE,
                status="none",
                frequency=Frequency.UNDEFINED,
                entitled=False,
            )

        plan = self._plan_for(subscription)
        entitled = plan is Plan.PRO and subscription.status in ENTITLED_STATUSES
        return Entitlement(
            account_id=account_id,
            plan=plan if entitled else Plan.FREE,
            status=subscription.status.value,
            frequency=self._frequency_for(subscription) if entitled else Frequency.UNDEFINED,
            entitled=entitled,
            current_period_end=subscription.ends_at or subscription.current_period_end,
        )

    def _plan_for(self, subscription: SubscriptionState) -> Plan:
        pro_product = self._products.pro_product_id
        # Without a configured product every subscription is the paid plan
        if pro_product is None or subscription.product_id == pro_product:
            return Plan.PRO
        return Plan.FREE

    def _frequency_for(self, subscription: SubscriptionState) -> Frequency:
        if subscription.variant_id is None:
            return Frequency.UNDEFINED
        if subscription.variant_id == self._products.pro_monthly_variant_id:
            return Frequency.MONTHLY
        if subscription.variant_id == self._products.pro_annually_variant_id:
            return Frequency.ANNUALLY
        return Frequency.UNDEFINED
