"""
Authentication dependencies.

require_session turns the Authorization header into an
AuthenticatedIdentity or raises:
- AuthenticationError (401) for missing/invalid/expired tokens and unknown sessions
- ServiceUnavailableError (503) when the session store is down

Components are created once by create_app() and read from app.state.
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import Request

from saas_gate.platform.bearer import extract_bearer_token
from saas_gate.platform.errors import AuthenticationError, ServiceUnavailableError
from saas_gate.platform.kv_store import StoreUnavailable
from saas_gate.sessions.authenticator import AuthenticatedIdentity
from saas_gate.sessions.errors import AuthError
from saas_gate.sessions.service import SessionService

logger = logging.getLogger(__name__)


def get_session_service(request: Request) -> SessionService:
    return request.app.state.session_service


@contextmanager
def translate_auth_errors(request: Request) -> Iterator[None]:
    """Map core session failures onto HTTP errors."""
    try:
        yield
    except AuthError as e:
        logger.info(
            "Authentication rejected",
            extra={
                "error_code": e.error_code,
                "path": request.url.path,
                "method": request.method,
            },
        )
        raise AuthenticationError(message=e.message, code=e.error_code) from e
    except StoreUnavailable as e:
        logger.error(
            "Session store unavailable",
            extra={
                "operation": e.operation,
                "path": request.url.path,
                "method": request.method,
            },
        )
        raise ServiceUnavailableError() from e


async def require_session(request: Request) -> AuthenticatedIdentity:
    """
    FastAPI dependency: the authenticated caller.

    The raw token is kept on request.state for handlers that act on the
    session itself (logout, refresh).
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        raise AuthenticationError(message="Authentication required", code="MISSING_TOKEN")

    with translate_auth_errors(request):
        identity = get_session_service(request).authenticate(token)

    request.state.identity = identity
    request.state.session_token = token
    return identity
