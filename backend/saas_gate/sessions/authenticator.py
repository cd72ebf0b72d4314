"""
Request authentication: token codec first, session store second.

authenticate() never mutates state. Sliding expiration is the separate,
explicit SessionService.refresh().
"""

import logging
from dataclasses import dataclass

from saas_gate.sessions.errors import InvalidToken
from saas_gate.sessions.session_store import SessionStore, redact_session_id
from saas_gate.sessions.token_codec import TokenCodec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Who the caller is, as established by authenticate()."""

    account_id: str
    session_id: str
    expires_at: int


class SessionAuthenticator:
    """Answers "is this request authenticated, and as whom?"."""

    def __init__(self, codec: TokenCodec, store: SessionStore):
        self._codec = codec
        self._store = store

    def authenticate(self, token: str) -> AuthenticatedIdentity:
        """
        Authenticate a bearer token.

        Algorithm:
        1. Verify MAC and expiry locally (no network call)
        2. Load the session; absent or revoked -> SessionNotFound
        3. Stored account must match the token's account -> else InvalidToken

        Raises:
            InvalidToken, TokenExpired, SessionNotFound: caller is not authenticated
            StoreUnavailable: infrastructure fault, caller must fail closed
        """
        claims = self._codec.verify(token)
        session = self._store.get(claims.session_id)

        if session.account_id != claims.account_id:
            logger.warning(
                "Session token and stored session disagree on account",
                extra={
                    "session": redact_session_id(claims.session_id),
                    "token_account_id": claims.account_id,
                    "stored_account_id": session.account_id,
                },
            )
            raise InvalidToken("session does not belong to token account")

        return AuthenticatedIdentity(
            account_id=session.account_id,
            session_id=session.session_id,
            expires_at=claims.expires_at,
        )
