"""
Subscription ledger: durable per-account subscription state.

State machine (per provider subscription id):
    (none)      --created-------------> active
    active      --payment_failed------> past_due
    past_due    --payment_recovered---> active
    active|past_due --cancel_scheduled-> cancelling (cancelled if already ended)
    cancelling  --resumed-------------> active
    any live    --cancelled-----------> cancelled   (terminal)

An account has at most one live (active, past_due, cancelling) subscription:
a created event for a new subscription id cancels the account's live one
with reason "superseded", or is ignored as superseded when the live one
has seen activity at or after the new subscription's creation.

Every application is guarded three ways:
1. processed_webhook_events primary key -> an event id is applied at most once
2. last_event_at                        -> events not newer than the last applied are stale
3. conditional UPDATE on (status, last_event_at) -> concurrent deliveries for the
   same subscription serialize; the loser re-evaluates against fresh state
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ClassVar, List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session as DbSession
from sqlalchemy.orm import sessionmaker

from saas_gate.billing.errors import LedgerError
from saas_gate.billing.events import LedgerEvent, LedgerEventType
from saas_gate.models.base import utcnow
from saas_gate.models.subscription import ProcessedWebhookEvent, Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)

MAX_APPLY_ATTEMPTS = 3
CANCELLATION_REASON_SUPERSEDED = "superseded"

LIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELLING,
})

# Statuses each event type may be applied from
ALLOWED_FROM = {
    LedgerEventType.PAYMENT_FAILED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}),
    LedgerEventType.PAYMENT_RECOVERED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}),
    LedgerEventType.CANCEL_SCHEDULED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}),
    LedgerEventType.RESUMED: frozenset({SubscriptionStatus.CANCELLING}),
    LedgerEventType.CANCELLED: LIVE_STATUSES,
}


class IgnoreReason(str, enum.Enum):
    """Why an event was acknowledged without a state change."""
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNKNOWN_SUBSCRIPTION = "unknown-subscription"
    TERMINAL = "terminal"
    INVALID_TRANSITION = "invalid-transition"
    SUPERSEDED = "superseded"


@dataclass(frozen=True)
class Applied:
    """The event changed the ledger."""

    provider_subscription_id: str
    previous_status: Optional[SubscriptionStatus]
    status: SubscriptionStatus
    superseded: Tuple[str, ...] = ()
    applied: ClassVar[bool] = True


@dataclass(frozen=True)
class Ignored:
    """The event was understood but caused no mutation."""

    reason: IgnoreReason
    applied: ClassVar[bool] = False


ApplyResult = Union[Applied, Ignored]


@dataclass(frozen=True)
class SubscriptionState:
    """Read-only snapshot of a subscription row with its effective status."""

    account_id: str
    provider_subscription_id: str
    status: SubscriptionStatus
    product_id: Optional[int]
    variant_id: Optional[int]
    current_period_end: Optional[datetime]
    ends_at: Optional[datetime]
    cancellation_reason: Optional[str]
    last_event_at: datetime
    last_event_id: str
    created_at: Optional[datetime]

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES


def effective_status(row: Subscription, now: datetime) -> SubscriptionStatus:
    """A cancelling subscription whose end has passed reads as cancelled."""
    status = SubscriptionStatus(row.status)
    if status is SubscriptionStatus.CANCELLING and row.ends_at is not None and row.ends_at <= now:
        return SubscriptionStatus.CANCELLED
    return status


def _snapshot(row: Subscription, now: datetime) -> SubscriptionState:
    return SubscriptionState(
        account_id=row.account_id,
        provider_subscription_id=row.provider_subscription_id,
        status=effective_status(row, now),
        product_id=row.product_id,
        variant_id=row.variant_id,
        current_period_end=row.current_period_end,
        ends_at=row.ends_at,
        cancellation_reason=row.cancellation_reason,
        last_event_at=row.last_event_at,
        last_event_id=row.last_event_id,
        created_at=row.created_at,
    )


def next_state(row: Subscription, event: LedgerEvent) -> Union[Tuple[SubscriptionStatus, dict], Ignored]:
    """
    Compute the transition for an event on an existing subscription.

    Returns (new_status, column_updates) or an Ignored result.
    """
    current = SubscriptionStatus(row.status)
    if effective_status(row, event.occurred_at) is SubscriptionStatus.CANCELLED:
        # A lapsed cancellation may still be closed out by the provider's final event
        if not (current is SubscriptionStatus.CANCELLING and event.event_type is LedgerEventType.CANCELLED):
            return Ignored(IgnoreReason.TERMINAL)

    if current not in ALLOWED_FROM.get(event.event_type, frozenset()):
        return Ignored(IgnoreReason.INVALID_TRANSITION)

    updates: dict = {}
    if event.product_id is not None:
        updates["product_id"] = event.product_id
    if event.variant_id is not None:
        updates["variant_id"] = event.variant_id
    if event.renews_at is not None:
        updates["current_period_end"] = event.renews_at

    if event.event_type is LedgerEventType.PAYMENT_FAILED:
        return SubscriptionStatus.PAST_DUE, updates

    if event.event_type is LedgerEventType.PAYMENT_RECOVERED:
        return SubscriptionStatus.ACTIVE, updates

    if event.event_type is LedgerEventType.RESUMED:
        updates["ends_at"] = None
        return SubscriptionStatus.ACTIVE, updates

    if event.event_type is LedgerEventType.CANCEL_SCHEDULED:
        end = event.ends_at or updates.get("current_period_end") or row.current_period_end
        if end is None or end <= event.occurred_at:
            updates["ends_at"] = end or event.occurred_at
            return SubscriptionStatus.CANCELLED, updates
        updates["ends_at"] = end
        return SubscriptionStatus.CANCELLING, updates

    # LedgerEventType.CANCELLED
    updates["ends_at"] = event.ends_at or row.ends_at or event.occurred_at
    return SubscriptionStatus.CANCELLED, updates


class _ConcurrentUpdate(Exception):
    """The conditional update lost a race; re-evaluate."""


class SubscriptionLedger:
    """
    Reads and mutates subscription state.

    Every read goes to the database; nothing is cached in-process.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, account_id: str) -> Optional[SubscriptionState]:
        """
        Return the account's current subscription.

        Prefers the most recently created live subscription, then the most
        recent one of any status. None when the account never subscribed.

        Raises:
            LedgerError: If the database cannot be read
        """
        now = self._clock()
        db: DbSession = self._session_factory()
        try:
            rows = (
                db.query(Subscription)
                .filter(Subscription.account_id == account_id)
                .order_by(Subscription.created_at.desc(), Subscription.last_event_at.desc())
                .all()
            )
            states = [_snapshot(row, now) for row in rows]
        except SQLAlchemyError as e:
            raise LedgerError("get", e) from e
        finally:
            db.close()

        for state in states:
            if state.is_live:
                return state
        return states[0] if states else None

    def get_by_provider_id(self, provider_subscription_id: str) -> Optional[SubscriptionState]:
        """Return one subscription by its provider id."""
        now = self._clock()
        db: DbSession = self._session_factory()
        try:
            row = (
                db.query(Subscription)
                .filter(Subscription.provider_subscription_id == provider_subscription_id)
                .one_or_none()
            )
            return _snapshot(row, now) if row is not None else None
        except SQLAlchemyError as e:
            raise LedgerError("get_by_provider_id", e) from e
        finally:
            db.close()

    def is_event_applied(self, event_id: str) -> bool:
        db: DbSession = self._session_factory()
        try:
            return db.get(ProcessedWebhookEvent, event_id) is not None
        except SQLAlchemyError as e:
            raise LedgerError("is_event_applied", e) from e
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def apply_event(self, event: LedgerEvent) -> ApplyResult:
        """
        Apply a verified event.

        Returns:
            Applied when the subscription changed, Ignored(reason) otherwise

        Raises:
            LedgerError: If the database fails or contention never settles
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
            db: DbSession = self._session_factory()
            try:
                result = self._apply_once(db, event)
                if result.applied:
                    db.commit()
                else:
                    db.rollback()
            except (_ConcurrentUpdate, IntegrityError) as e:
                db.rollback()
                last_error = e
                logger.info(
                    "Ledger update raced another delivery, re-evaluating",
                    extra={
                        "event_id": event.event_id,
                        "provider_subscription_id": event.provider_subscription_id,
                        "attempt": attempt,
                    },
                )
                continue
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(
                    "Ledger update failed",
                    extra={"event_id": event.event_id, "error": str(e)},
                )
                raise LedgerError("apply_event", e) from e
            finally:
                db.close()

            self._log_result(event, result)
            return result

        raise LedgerError("apply_event", last_error)

    def _apply_once(self, db: DbSession, event: LedgerEvent) -> ApplyResult:
        if db.get(ProcessedWebhookEvent, event.event_id) is not None:
            return Ignored(IgnoreReason.DUPLICATE)

        row = (
            db.query(Subscription)
            .filter(Subscription.provider_subscription_id == event.provider_subscription_id)
            .one_or_none()
        )

        if row is None:
            if event.event_type is not LedgerEventType.CREATED:
                return Ignored(IgnoreReason.UNKNOWN_SUBSCRIPTION)
            superseded = self._supersede_live(db, event)
            if isinstance(superseded, Ignored):
                return superseded
            db.add(Subscription(
                account_id=event.account_id,
                provider_subscription_id=event.provider_subscription_id,
                product_id=event.product_id,
                variant_id=event.variant_id,
                status=SubscriptionStatus.ACTIVE.value,
                current_period_end=event.renews_at,
                ends_at=None,
                last_event_at=event.occurred_at,
                last_event_id=event.event_id,
            ))
            db.add(self._processed(event))
            db.flush()
            return Applied(event.provider_subscription_id, None, SubscriptionStatus.ACTIVE, superseded=superseded)

        if event.occurred_at <= row.last_event_at:
            return Ignored(IgnoreReason.STALE)

        if event.event_type is LedgerEventType.CREATED:
            if effective_status(row, event.occurred_at) is SubscriptionStatus.CANCELLED:
                return Ignored(IgnoreReason.TERMINAL)
            return Ignored(IgnoreReason.INVALID_TRANSITION)

        outcome = next_state(row, event)
        if isinstance(outcome, Ignored):
            return outcome
        new_status, updates = outcome

        db.add(self._processed(event))
        db.flush()

        values = dict(updates)
        values.update({
            "status": new_status.value,
            "last_event_at": event.occurred_at,
            "last_event_id": event.event_id,
            "updated_at": utcnow(),
        })
        updated = (
            db.query(Subscription)
            .filter(
                Subscription.id == row.id,
                Subscription.status == row.status,
                Subscription.last_event_at < event.occurred_at,
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            raise _ConcurrentUpdate()

        return Applied(event.provider_subscription_id, SubscriptionStatus(row.status), new_status)

    @staticmethod
    def _supersede_live(db: DbSession, event: LedgerEvent) -> Union[Tuple[str, ...], Ignored]:
        """
        Keep at most one live subscription per account.

        A new subscription cancels the account's live one (reason
        "superseded"), unless that one has seen activity at or after the
        new subscription's creation; then the creation is the older
        purchase and is ignored.
        """
        live_rows = (
            db.query(Subscription)
            .filter(
                Subscription.account_id == event.account_id,
                Subscription.status.in_([s.value for s in LIVE_STATUSES]),
            )
            .all()
        )
        if any(other.last_event_at >= event.occurred_at for other in live_rows):
            return Ignored(IgnoreReason.SUPERSEDED)

        superseded = []
        for other in live_rows:
            ends_at = other.ends_at if other.ends_at is not None and other.ends_at < event.occurred_at else event.occurred_at
            updated = (
                db.query(Subscription)
                .filter(
                    Subscription.id == other.id,
                    Subscription.status == other.status,
                    Subscription.last_event_at < event.occurred_at,
                )
                .update(
                    {
                        "status": SubscriptionStatus.CANCELLED.value,
                        "ends_at": ends_at,
                        "cancellation_reason": CANCELLATION_REASON_SUPERSEDED,
                        "last_event_at": event.occurred_at,
                        "last_event_id": event.event_id,
                        "updated_at": utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                raise _ConcurrentUpdate()
            superseded.append(other.provider_subscription_id)
            logger.info(
                "Superseded live subscription",
                extra={
                    "account_id": event.account_id,
                    "provider_subscription_id": other.provider_subscription_id,
                    "superseded_by": event.provider_subscription_id,
                },
            )
        return tuple(superseded)

    @staticmethod
    def _processed(event: LedgerEvent) -> ProcessedWebhookEvent:
        return ProcessedWebhookEvent(
            event_id=event.event_id,
            provider_subscription_id=event.provider_subscription_id,
            event_type=event.event_type.value,
            occurred_at=event.occurred_at,
        )

    @staticmethod
    def _log_result(event: LedgerEvent, result: ApplyResult) -> None:
        extra = {
            "event_id": event.event_id,
            "event_type": event.event_type.value,
            "provider_subscription_id": event.provider_subscription_id,
            "account_id": event.account_id,
        }
        if isinstance(result, Applied):
            extra["previous_status"] = result.previous_status.value if result.previous_status else None
            extra["status"] = result.status.value
            if result.superseded:
                extra["superseded"] = list(result.superseded)
            logger.info("Applied subscription event", extra=extra)
        else:
            extra["reason"] = result.reason.value
            logger.info("Ignored subscription event", extra=extra)

    def finalize_scheduled_cancellations(self, now: Optional[datetime] = None) -> List[str]:
        """
        Move cancelling subscriptions whose end has passed to cancelled.

        Reads already treat them as cancelled; this makes the stored status
        match. Returns the provider subscription ids that were finalized.
        """
        now = now or self._clock()
        db: DbSession = self._session_factory()
        try:
            rows = (
                db.query(Subscription)
                .filter(
                    Subscription.status == SubscriptionStatus.CANCELLING.value,
                    Subscription.ends_at <= now,
                )
                .all()
            )
            finalized = []
            for row in rows:
                updated = (
                    db.query(Subscription)
                    .filter(
                        Subscription.id == row.id,
                        Subscription.status == SubscriptionStatus.CANCELLING.value,
                    )
                    .update(
                        {"status": SubscriptionStatus.CANCELLED.value, "updated_at": utcnow()},
                        synchronize_session=False,
                    )
                )
                if updated == 1:
                    finalized.append(row.provider_subscription_id)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise LedgerError("finalize_scheduled_cancellations", e) from e
        finally:
            db.close()

        if finalized:
            logger.info(
                "Finalized scheduled cancellations",
                extra={"count": len(finalized), "provider_subscription_ids": finalized},
            )
        return finalized
