"""
Session API routes.

Handles:
- Login (email and password checked by the injected CredentialVerifier)
- Current session lookup
- Logout (destroys the presented session)
- Explicit sliding refresh (rotates the session)
- Log out everywhere (fans out over the account's session index)
- Password change, which logs the account out everywhere

Without a verifier, login and password change answer 503.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import APIRouter, Depends, Request

from saas_gate.api.dependencies.auth import get_session_service, require_session, translate_auth_errors
from saas_gate.api.schemas.identity import (
    ChangePasswordRequest,
    LoginRequest,
    LogoutResponse,
    RevokeAllResponse,
    SessionResponse,
    TokenResponse,
)
from saas_gate.middleware.rate_limit import rate_limit_dependency
from saas_gate.platform.errors import ServiceUnavailableError
from saas_gate.sessions.authenticator import AuthenticatedIdentity
from saas_gate.sessions.errors import LoginUnavailable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/identity", tags=["identity"])


def _client_metadata(request: Request) -> dict:
    metadata = {}
    user_agent = request.headers.get("User-Agent")
    if user_agent:
        metadata["user_agent"] = user_agent[:256]
    if request.client:
        metadata["ip"] = request.client.host
    return metadata


@contextmanager
def _login_available() -> Iterator[None]:
    try:
        yield
    except LoginUnavailable as e:
        logger.error("Login attempted without a credential verifier")
        raise ServiceUnavailableError(message="Login is not available", code="LOGIN_UNAVAILABLE") from e


@router.post("/session", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    request: Request,
    _rate_limit=Depends(rate_limit_dependency("identity.login")),
):
    """Exchange email and password for a session token."""
    service = get_session_service(request)
    with _login_available(), translate_auth_errors(request):
        issued = service.login(body.email, body.password, metadata=_client_metadata(request))

    return TokenResponse.from_issued(issued, service.ttl_seconds)


@router.get("/session", response_model=SessionResponse)
async def get_session(
    _rate_limit=Depends(rate_limit_dependency("identity.session")),
    identity: AuthenticatedIdentity = Depends(require_session),
):
    """Return the authenticated caller's session."""
    return SessionResponse.from_identity(identity)


@router.delete("/session", response_model=LogoutResponse)
async def logout(
    request: Request,
    _rate_limit=Depends(rate_limit_dependency("identity.logout")),
    identity: AuthenticatedIdentity = Depends(require_session),
):
    """Destroy the presented session. Its token stops working immediately."""
    with translate_auth_errors(request):
        get_session_service(request).logout(request.state.session_token)

    logger.info("Session logged out", extra={"account_id": identity.account_id})
    return LogoutResponse(revoked=True, message="Session revoked")


@router.post("/session/refresh", response_model=TokenResponse)
async def refresh_session(
    request: Request,
    _rate_limit=Depends(rate_limit_dependency("identity.refresh")),
    identity: AuthenticatedIdentity = Depends(require_session),
):
    """
    Rotate the session: a new token with a full lifetime is returned and
    the presented token is revoked.
    """
    service = get_session_service(request)
    with translate_auth_errors(request):
        issued = service.refresh(request.state.session_token, metadata=_client_metadata(request))

    return TokenResponse.from_issued(issued, service.ttl_seconds)


@router.post("/sessions/revoke-all", response_model=RevokeAllResponse)
async def revoke_all_sessions(
    request: Request,
    _rate_limit=Depends(rate_limit_dependency("identity.revoke_all")),
    identity: AuthenticatedIdentity = Depends(require_session),
):
    """
    Revoke every session of the caller's account, including this one.

    Best effort within a deadline; a partial result is reported, not
    raised, and the call can be repeated to finish.
    """
    logger.info("Revoking all sessions for account", extra={"account_id": identity.account_id})
    report = get_session_service(request).revoke_all(identity.account_id)
    return RevokeAllResponse.from_report(report)


@router.post("/credentials", response_model=RevokeAllResponse)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    _rate_limit=Depends(rate_limit_dependency("identity.credentials")),
    identity: AuthenticatedIdentity = Depends(require_session),
):
    """
    Change the caller's password.

    Every session of the account is revoked afterwards, this one included;
    the client logs in again with the new password.
    """
    with _login_available(), translate_auth_errors(request):
        report = get_session_service(request).change_password(
            request.state.session_token,
            body.current_password,
            body.new_password,
        )

    logger.info("Password changed", extra={"account_id": identity.account_id})
    return RevokeAllResponse.from_report(report)
