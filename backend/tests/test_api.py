"""
HTTP-level tests for the assembled application.

Runs create_app() against InMemoryKeyValueStore, a fake clock and
in-memory SQLite, through FastAPI's TestClient.

Verifies:
- Login issues a session through the credential verifier; 503 without one
- A password change revokes every session of the account
- 401 for missing/invalid/revoked tokens, 503 when the store is down
- 429 with Retry-After once a route's budget is spent
- Logout, refresh and revoke-all take effect on the next request
- Webhook endpoint: 200 ack, 401 on signature mismatch, 400 on bad payload, 500 on ledger fault
- /api/entitlements/me reflects processed webhooks immediately
- require_entitlement blocks with 402
- /health reports store and database reachability
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from saas_gate.api.dependencies import require_entitlement
from saas_gate.app import create_app
from saas_gate.billing.entitlements import EntitlementService
from saas_gate.billing.errors import LedgerError
from saas_gate.billing.ledger import SubscriptionLedger
from saas_gate.billing.webhook import SIGNATURE_HEADER, WebhookProcessor
from saas_gate.platform.kv_store import InMemoryKeyValueStore, StoreUnavailable

from conftest import sign

WEBHOOK_PATH = "/api/webhooks/lemonsqueezy/events"


class FlakyStore(InMemoryKeyValueStore):
    """In-memory store whose operations can be switched off by name."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.failing = set()

    def get(self, key):
        if "get" in self.failing:
            raise StoreUnavailable("get")
        return super().get(key)

    def set(self, key, value, ttl_seconds, only_if_absent=False):
        if "set" in self.failing:
            raise StoreUnavailable("set")
        return super().set(key, value, ttl_seconds, only_if_absent=only_if_absent)

    def incr_with_expiry(self, key, ttl_seconds):
        if "incr_with_expiry" in self.failing:
            raise StoreUnavailable("incr_with_expiry")
        return super().incr_with_expiry(key, ttl_seconds)

    def ping(self):
        return "ping" not in self.failing


@pytest.fixture
def store(clock):
    return FlakyStore(clock)


@pytest.fixture
def app(settings, store, session_factory, clock):
    app = create_app(settings, kv_store=store, session_factory=session_factory, clock=clock)

    @app.get("/test/paid-feature")
    async def paid_feature(entitlement=Depends(require_entitlement)):
        return {"plan": entitlement.plan.value}

    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def issued(app):
    return app.state.session_service.create_session("acct_1", metadata={"user_agent": "pytest"})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _deliver(client, body, signature=None):
    return client.post(
        WEBHOOK_PATH,
        content=body,
        headers={SIGNATURE_HEADER: signature if signature is not None else sign(body), "Content-Type": "application/json"},
    )


def _now():
    return datetime.now(timezone.utc).replace(microsecond=0)


# ============================================================================
# TEST SUITE: SESSION ROUTES
# ============================================================================

class TestSessionRoutes:

    def test_missing_token_is_401(self, client):
        response = client.get("/api/identity/session")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "MISSING_TOKEN"
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert "X-Correlation-ID" in response.headers

    def test_bearer_token_authenticates(self, client, issued):
        response = client.get("/api/identity/session", headers=_auth(issued.token))

        assert response.status_code == 200
        data = response.json()
        assert data["account_id"] == "acct_1"
        assert issued.session_id not in data["session"]

    def test_bare_token_authenticates(self, client, issued):
        response = client.get("/api/identity/session", headers={"Authorization": issued.token})

        assert response.status_code == 200

    def test_tampered_token_is_401(self, client, issued):
        tampered = issued.token[:-2] + ("AA" if not issued.token.endswith("AA") else "BB")

        response = client.get("/api/identity/session", headers=_auth(tampered))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOKEN"

    def test_expired_token_is_401(self, client, issued, clock, settings):
        clock.advance(settings.session.ttl_seconds + 1)

        response = client.get("/api/identity/session", headers=_auth(issued.token))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "TOKEN_EXPIRED"

    def test_store_outage_is_503_not_401(self, client, issued, store):
        store.failing.add("get")

        response = client.get("/api/identity/session", headers=_auth(issued.token))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"

    def test_logout_revokes_token(self, client, issued):
        response = client.delete("/api/identity/session", headers=_auth(issued.token))

        assert response.status_code == 200
        assert response.json()["revoked"] is True

        after = client.get("/api/identity/session", headers=_auth(issued.token))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "SESSION_NOT_FOUND"

    def test_refresh_rotates_session(self, client, issued, clock):
        clock.advance(600)

        response = client.post("/api/identity/session/refresh", headers=_auth(issued.token))

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "Bearer"
        assert data["account_id"] == "acct_1"
        assert data["token"] != issued.token

        assert client.get("/api/identity/session", headers=_auth(data["token"])).status_code == 200
        assert client.get("/api/identity/session", headers=_auth(issued.token)).status_code == 401

    def test_revoke_all_logs_out_every_session(self, app, client, issued):
        other = app.state.session_service.create_session("acct_1")

        response = client.post("/api/identity/sessions/revoke-all", headers=_auth(issued.token))

        assert response.status_code == 200
        data = response.json()
        assert data["revoked"] == 2
        assert data["complete"] is True
        for token in (issued.token, other.token):
            assert client.get("/api/identity/session", headers=_auth(token)).status_code == 401


# ============================================================================
# TEST SUITE: LOGIN AND PASSWORD CHANGE
# ============================================================================

@pytest.fixture
def login_client(settings, store, session_factory, clock, credentials):
    app = create_app(
        settings,
        kv_store=store,
        session_factory=session_factory,
        clock=clock,
        credential_verifier=credentials,
    )
    return TestClient(app)


def _login(client, email="ada@example.com", password="correct-horse"):
    return client.post("/api/identity/session", json={"email": email, "password": password})


class TestLoginRoute:

    def test_login_issues_usable_token(self, login_client, settings):
        response = _login(login_client)

        assert response.status_code == 200
        data = response.json()
        assert data["account_id"] == "acct_1"
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == settings.session.ttl_seconds

        session = login_client.get("/api/identity/session", headers=_auth(data["token"]))
        assert session.status_code == 200
        assert session.json()["account_id"] == "acct_1"

    @pytest.mark.parametrize(
        "email,password",
        [("ada@example.com", "wrong"), ("nobody@example.com", "correct-horse")],
    )
    def test_bad_credentials_are_401(self, login_client, email, password):
        response = _login(login_client, email, password)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"

    def test_missing_password_is_422(self, login_client):
        response = login_client.post("/api/identity/session", json={"email": "ada@example.com"})

        assert response.status_code == 422

    def test_login_without_verifier_is_503(self, client):
        response = _login(client)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "LOGIN_UNAVAILABLE"

    def test_login_store_outage_is_503(self, login_client, store):
        store.failing.add("set")

        response = _login(login_client)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"

    def test_login_has_its_own_budget(self, login_client):
        statuses = [_login(login_client, password="wrong").status_code for _ in range(4)]

        assert statuses == [401, 401, 401, 429]
        assert _login(login_client).status_code == 429


class TestPasswordChangeRoute:

    def test_change_revokes_every_session(self, login_client, credentials):
        first = _login(login_client).json()["token"]
        second = _login(login_client).json()["token"]

        response = login_client.post(
            "/api/identity/credentials",
            json={"current_password": "correct-horse", "new_password": "battery-staple"},
            headers=_auth(first),
        )

        assert response.status_code == 200
        assert response.json()["revoked"] == 2
        assert response.json()["complete"] is True
        for token in (first, second):
            assert login_client.get("/api/identity/session", headers=_auth(token)).status_code == 401
        assert credentials.accounts["ada@example.com"] == ("acct_1", "battery-staple")
        assert _login(login_client, password="battery-staple").status_code == 200

    def test_wrong_current_password_keeps_sessions(self, login_client, credentials):
        token = _login(login_client).json()["token"]

        response = login_client.post(
            "/api/identity/credentials",
            json={"current_password": "guess", "new_password": "battery-staple"},
            headers=_auth(token),
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"
        assert login_client.get("/api/identity/session", headers=_auth(token)).status_code == 200
        assert credentials.accounts["ada@example.com"] == ("acct_1", "correct-horse")

    def test_unchanged_password_is_422(self, login_client):
        token = _login(login_client).json()["token"]

        response = login_client.post(
            "/api/identity/credentials",
            json={"current_password": "correct-horse", "new_password": "correct-horse"},
            headers=_auth(token),
        )

        assert response.status_code == 422

    def test_change_requires_session(self, login_client):
        response = login_client.post(
            "/api/identity/credentials",
            json={"current_password": "correct-horse", "new_password": "battery-staple"},
        )

        assert response.status_code == 401


# ============================================================================
# TEST SUITE: RATE LIMITING
# ============================================================================

class TestRateLimitedRoutes:

    def test_sixth_request_is_429_with_retry_after(self, client, issued):
        for _ in range(5):
            assert client.get("/api/identity/session", headers=_auth(issued.token)).status_code == 200

        response = client.get("/api/identity/session", headers=_auth(issued.token))

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0
        assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"

    def test_budget_returns_in_next_window(self, client, issued, clock):
        for _ in range(6):
            client.get("/api/identity/session", headers=_auth(issued.token))

        clock.advance(60)

        assert client.get("/api/identity/session", headers=_auth(issued.token)).status_code == 200

    def test_rate_limit_store_outage_fails_closed(self, client, issued, store):
        store.failing.add("incr_with_expiry")

        response = client.get("/api/identity/session", headers=_auth(issued.token))

        assert response.status_code == 429

    def test_anonymous_callers_are_limited_by_address(self, client):
        responses = [client.get("/api/identity/session") for _ in range(6)]

        assert [r.status_code for r in responses] == [401] * 5 + [429]


# ============================================================================
# TEST SUITE: WEBHOOKS AND ENTITLEMENTS
# ============================================================================

class TestWebhookRoute:

    def test_valid_delivery_is_acknowledged(self, client, webhook_body):
        body = webhook_body("subscription_created", event_id="evt_1", updated_at=_now() - timedelta(days=1))

        response = _deliver(client, body)

        assert response.status_code == 200
        assert response.json() == {
            "status": "processed",
            "event_id": "evt_1",
            "outcome": "applied",
            "applied": True,
            "subscription_status": "active",
        }

    def test_redelivery_is_200_and_not_reapplied(self, client, webhook_body):
        body = webhook_body("subscription_created", event_id="evt_1", updated_at=_now() - timedelta(days=1))
        _deliver(client, body)

        response = _deliver(client, body)

        assert response.status_code == 200
        assert response.json()["applied"] is False
        assert response.json()["outcome"] == "duplicate"

    def test_one_byte_mutation_is_401(self, app, client, webhook_body):
        body = webhook_body("subscription_created", event_id="evt_1", updated_at=_now())
        signature = sign(body)
        mutated = body.replace(b"acct_1", b"acct_2")

        response = _deliver(client, mutated, signature)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert app.state.ledger.get("acct_2") is None

    def test_missing_signature_is_401(self, client, webhook_body):
        response = client.post(WEBHOOK_PATH, content=webhook_body("subscription_created"))

        assert response.status_code == 401

    def test_signed_malformed_payload_is_400(self, client):
        body = b'{"meta": "nope"}'

        response = _deliver(client, body)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unrecognized_event_is_acknowledged(self, client, webhook_body):
        response = _deliver(client, webhook_body("order_created", event_id="evt_o"))

        assert response.status_code == 200
        assert response.json()["outcome"] == "unrecognized"

    def test_ledger_fault_is_500(self, app, client, webhook_body):
        ledger = Mock(spec=SubscriptionLedger)
        ledger.apply_event.side_effect = LedgerError("apply_event")
        app.state.webhook_processor = WebhookProcessor(ledger)

        response = _deliver(client, webhook_body("subscription_created", event_id="evt_1"))

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "PROCESSING_ERROR"


class TestEntitlementRoutes:

    def test_free_without_subscription(self, client, issued):
        response = client.get("/api/entitlements/me", headers=_auth(issued.token))

        assert response.status_code == 200
        data = response.json()
        assert data["plan"] == "free"
        assert data["status"] == "none"
        assert data["entitled"] is False

    def test_webhooks_are_reflected_on_next_request(self, client, issued, webhook_body):
        now = _now()
        _deliver(client, webhook_body("subscription_created", event_id="evt_1", updated_at=now - timedelta(days=1)))

        data = client.get("/api/entitlements/me", headers=_auth(issued.token)).json()
        assert data["plan"] == "pro"
        assert data["frequency"] == "monthly"
        assert data["entitled"] is True

        _deliver(client, webhook_body("subscription_payment_failed", event_id="evt_9", updated_at=now, status="past_due"))

        data = client.get("/api/entitlements/me", headers=_auth(issued.token)).json()
        assert data["status"] == "past_due"
        assert data["entitled"] is False

    def test_requires_session(self, client):
        assert client.get("/api/entitlements/me").status_code == 401

    def test_ledger_failure_is_503(self, app, client, issued, products):
        ledger = Mock(spec=SubscriptionLedger)
        ledger.get.side_effect = LedgerError("get")
        app.state.entitlement_service = EntitlementService(ledger, products)

        response = client.get("/api/entitlements/me", headers=_auth(issued.token))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "ENTITLEMENT_EVAL_FAILED"

    def test_paid_feature_requires_entitlement(self, client, issued, webhook_body):
        blocked = client.get("/test/paid-feature", headers=_auth(issued.token))

        assert blocked.status_code == 402
        assert blocked.json()["error"]["code"] == "PAYMENT_REQUIRED"
        assert blocked.json()["error"]["details"]["plan"] == "free"

        _deliver(client, webhook_body("subscription_created", event_id="evt_1", updated_at=_now() - timedelta(days=1)))

        allowed = client.get("/test/paid-feature", headers=_auth(issued.token))
        assert allowed.status_code == 200
        assert allowed.json() == {"plan": "pro"}


# ============================================================================
# TEST SUITE: HEALTH
# ============================================================================

class TestHealthRoute:

    def test_healthy(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["checks"]["store"]["status"] == "ok"
        assert data["checks"]["database"]["status"] == "ok"

    def test_store_down_is_503(self, client, store):
        store.failing.add("ping")

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["checks"]["store"]["status"] == "error"

    def test_health_is_not_rate_limited(self, client, store):
        # A rate-limited route would answer 429 once the counters are unreachable
        store.failing.add("incr_with_expiry")

        assert [client.get("/health").status_code for _ in range(3)] == [200] * 3

        store.failing.add("ping")
        assert client.get("/health").status_code == 503
