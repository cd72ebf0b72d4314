"""
Application factory.

create_app() builds every component once from Settings and hangs them on
app.state; dependencies and routes read them from there. Tests pass an
InMemoryKeyValueStore and an in-memory SQLite session factory.

Run:
    uvicorn saas_gate.app:get_app --factory
"""

import logging
import time
from typing import Callable, Optional

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from saas_gate.api.routes import entitlements, health, identity, webhooks_lemonsqueezy
from saas_gate.billing.entitlements import EntitlementService
from saas_gate.billing.ledger import SubscriptionLedger
from saas_gate.billing.webhook import LemonSqueezyWebhookVerifier, WebhookProcessor
from saas_gate.config.settings import Settings, load_settings
from saas_gate.database.session import create_db_engine, create_session_factory, init_db
from saas_gate.middleware.rate_limit import RateLimiter
from saas_gate.platform.errors import AppError, ErrorHandlerMiddleware, app_error_handler
from saas_gate.platform.health import HealthChecker
from saas_gate.platform.kv_store import KeyValueStore, RedisKeyValueStore
from saas_gate.sessions.credentials import CredentialVerifier
from saas_gate.sessions.service import SessionService
from saas_gate.sessions.session_store import SessionStore
from saas_gate.sessions.token_codec import TokenCodec

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings,
    kv_store: Optional[KeyValueStore] = None,
    session_factory: Optional[sessionmaker] = None,
    clock: Callable[[], float] = time.time,
    credential_verifier: Optional[CredentialVerifier] = None,
) -> FastAPI:
    """
    Wire the core components into a FastAPI application.

    Args:
        settings:        Loaded configuration
        kv_store:        Store for sessions and rate limits (default: Redis at settings.redis_url)
        session_factory: Ledger database sessions (default: engine at settings.database_url)
        clock:           Time source for tokens, sessions and rate-limit windows
        credential_verifier: Account subsystem's credential check (login and
                         password change answer 503 without one)
    """
    if kv_store is None:
        kv_store = RedisKeyValueStore(settings.redis_url, timeout_seconds=settings.store_timeout_seconds)
    if session_factory is None:
        engine = create_db_engine(settings.database_url)
        init_db(engine)
        session_factory = create_session_factory(engine)

    codec = TokenCodec(
        settings.token.signing_keys,
        algorithm=settings.token.algorithm,
        issuer=settings.token.issuer,
        clock=clock,
    )
    session_store = SessionStore(kv_store, revoke_all_timeout_seconds=settings.session.revoke_all_timeout_seconds)
    ledger = SubscriptionLedger(session_factory)

    app = FastAPI(title="saas-gate")
    app.state.settings = settings
    app.state.kv_store = kv_store
    app.state.token_codec = codec
    app.state.session_service = SessionService(
        codec,
        session_store,
        ttl_seconds=settings.session.ttl_seconds,
        clock=clock,
        credential_verifier=credential_verifier,
    )
    app.state.rate_limiter = RateLimiter(kv_store, settings.rate_limits, clock=clock)
    app.state.ledger = ledger
    app.state.entitlement_service = EntitlementService(ledger, settings.products)
    app.state.webhook_verifier = LemonSqueezyWebhookVerifier(settings.webhook_secret)
    app.state.webhook_processor = WebhookProcessor(ledger)
    app.state.health_checker = HealthChecker(kv_store, session_factory)

    app.add_middleware(ErrorHandlerMiddleware)
    app.add_exception_handler(AppError, app_error_handler)

    app.include_router(health.router)
    app.include_router(identity.router)
    app.include_router(entitlements.router)
    app.include_router(webhooks_lemonsqueezy.router)

    logger.info(
        "Application configured",
        extra={
            "token_algorithm": settings.token.algorithm,
            "signing_key_count": len(settings.token.signing_keys),
            "rate_limited_routes": sorted(settings.rate_limits.routes),
            "login_enabled": credential_verifier is not None,
        },
    )
    return app


def get_app() -> FastAPI:
    """ASGI factory reading configuration from the environment."""
    return create_app(load_settings())
