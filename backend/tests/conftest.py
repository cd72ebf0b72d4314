"""
Shared pytest fixtures for saas-gate tests.

Sessions and rate limits run against InMemoryKeyValueStore with a
controllable clock; the ledger runs against in-memory SQLite.
"""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import pytest

from saas_gate.billing.ledger import SubscriptionLedger
from saas_gate.config.settings import ProductSettings, RateLimitSettings, RouteLimit, Settings, TokenSettings
from saas_gate.database.session import create_db_engine, create_session_factory, init_db
from saas_gate.platform.kv_store import InMemoryKeyValueStore
from saas_gate.sessions.credentials import CredentialVerifier
from saas_gate.sessions.service import SessionService
from saas_gate.sessions.session_store import SessionStore
from saas_gate.sessions.token_codec import TokenCodec

SIGNING_KEY = "k" * 64
PREVIOUS_SIGNING_KEY = "p" * 64
WEBHOOK_SECRET = "whsec-test-0123456789abcdef"
START_TIME = 1_700_000_000.0
LEDGER_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

PRO_PRODUCT_ID = 1001
PRO_MONTHLY_VARIANT_ID = 2001
PRO_ANNUALLY_VARIANT_ID = 2002


class FakeClock:
    """Mutable unix-time clock."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryCredentials(CredentialVerifier):
    """Account directory with plaintext passwords, keyed by email."""

    def __init__(self, accounts=None):
        self.accounts = dict(accounts or {"ada@example.com": ("acct_1", "correct-horse")})

    def verify(self, email, password):
        record = self.accounts.get(email)
        if record is not None and record[1] == password:
            return record[0]
        return None

    def change_password(self, account_id, current_password, new_password):
        for email, (owner, password) in self.accounts.items():
            if owner == account_id and password == current_password:
                self.accounts[email] = (owner, new_password)
                return True
        return False


@pytest.fixture
def credentials():
    return InMemoryCredentials()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def codec(clock):
    return TokenCodec([SIGNING_KEY], algorithm="HS512", issuer="saas-gate", clock=clock)


@pytest.fixture
def session_store(kv_store):
    return SessionStore(kv_store, revoke_all_timeout_seconds=2.0)


@pytest.fixture
def session_service(codec, session_store, clock):
    return SessionService(codec, session_store, ttl_seconds=3600, clock=clock)


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite database per test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    factory = create_session_factory(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return SubscriptionLedger(session_factory, clock=lambda: LEDGER_NOW)


@pytest.fixture
def products():
    return ProductSettings(
        pro_product_id=PRO_PRODUCT_ID,
        pro_monthly_variant_id=PRO_MONTHLY_VARIANT_ID,
        pro_annually_variant_id=PRO_ANNUALLY_VARIANT_ID,
    )


@pytest.fixture
def settings(products):
    return Settings(
        token=TokenSettings(signing_keys=(SIGNING_KEY,)),
        webhook_secret=WEBHOOK_SECRET,
        rate_limits=RateLimitSettings(
            routes={
                "identity.session": RouteLimit(limit=5, window_seconds=60),
                "identity.login": RouteLimit(limit=3, window_seconds=60),
            },
            default=RouteLimit(limit=100, window_seconds=60),
        ),
        database_url="sqlite://",
        products=products,
    )


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@pytest.fixture
def webhook_body():
    """
    Factory for Lemon Squeezy subscription webhook bodies (raw bytes).

    Usage:
        body = webhook_body("subscription_created", subscription_id="sub_1",
                            account_id="acct_1", updated_at=ts)
        invoice = webhook_body("subscription_payment_failed", subscription_id="sub_1",
                               invoice_id="inv_1", status="failed")
    """

    def _make(
        event_name: str,
        subscription_id: str = "sub_1",
        account_id: str = "acct_1",
        updated_at: datetime = LEDGER_NOW,
        event_id: str = None,
        status: str = "active",
        renews_at: datetime = None,
        ends_at: datetime = None,
        product_id: int = PRO_PRODUCT_ID,
        variant_id: int = PRO_MONTHLY_VARIANT_ID,
        invoice_id: str = None,
    ) -> bytes:
        meta = {
            "event_name": event_name,
            "custom_data": {"customer_id": account_id},
        }
        if event_id is not None:
            meta["event_id"] = event_id
        if invoice_id is not None:
            # subscription_payment_* events deliver the invoice, not the subscription
            data = {
                "type": "subscription-invoices",
                "id": invoice_id,
                "attributes": {
                    "store_id": 1,
                    "subscription_id": subscription_id,
                    "billing_reason": "renewal",
                    "status": status,
                    "created_at": updated_at.isoformat(),
                    "updated_at": updated_at.isoformat(),
                },
            }
            return json.dumps({"meta": meta, "data": data}).encode("utf-8")
        payload = {
            "meta": meta,
            "data": {
                "type": "subscriptions",
                "id": subscription_id,
                "attributes": {
                    "store_id": 1,
                    "product_id": product_id,
                    "variant_id": variant_id,
                    "status": status,
                    "renews_at": (renews_at or updated_at + timedelta(days=30)).isoformat(),
                    "ends_at": ends_at.isoformat() if ends_at else None,
                    "created_at": updated_at.isoformat(),
                    "updated_at": updated_at.isoformat(),
                },
            },
        }
        return json.dumps(payload).encode("utf-8")

    return _make
