"""
Session lifecycle: issue at login, logout, log out everywhere, refresh.

Credential checking belongs to the account subsystem. Login goes through
a CredentialVerifier before create_session() is called, and the subsystem
calls credentials_changed() after a password or key change.
"""

import logging
import math
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from saas_gate.platform.kv_store import StoreUnavailable
from saas_gate.sessions.authenticator import AuthenticatedIdentity, SessionAuthenticator
from saas_gate.sessions.credentials import CredentialVerifier
from saas_gate.sessions.errors import InvalidCredentials, LoginUnavailable
from saas_gate.sessions.session_store import RevocationReport, Session, SessionStore, redact_session_id
from saas_gate.sessions.token_codec import TokenCodec

logger = logging.getLogger(__name__)

SESSION_ID_BYTES = 32
MAX_ID_ATTEMPTS = 3


@dataclass(frozen=True)
class IssuedSession:
    """A freshly created session and the token that represents it."""

    token: str
    session_id: str
    account_id: str
    expires_at: int


class SessionService:
    """Creates and destroys sessions; authenticate() lives on the authenticator."""

    def __init__(
        self,
        codec: TokenCodec,
        store: SessionStore,
        ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.time,
        credential_verifier: Optional[CredentialVerifier] = None,
    ):
        self._codec = codec
        self._store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.authenticator = SessionAuthenticator(codec, store)
        self._verifier = credential_verifier

    def create_session(self, account_id: str, metadata: Optional[dict] = None) -> IssuedSession:
        """
        Start a session for an authenticated account.

        The store TTL is derived from the same expires_at sealed into the
        token (equal-TTL policy).

        Raises:
            StoreUnavailable: If the store cannot be reached
        """
        now = self._clock()
        issued_at = int(now)
        expires_at = issued_at + self.ttl_seconds
        ttl = max(int(math.ceil(expires_at - now)), 1)

        for attempt in range(MAX_ID_ATTEMPTS):
            session = Session(
                session_id=secrets.token_urlsafe(SESSION_ID_BYTES),
                account_id=str(account_id),
                issued_at=issued_at,
                expires_at=expires_at,
                metadata=dict(metadata or {}),
            )
            try:
                self._store.put(session, ttl)
                break
            except ValueError:
                logger.warning("Session id collision, regenerating", extra={"attempt": attempt + 1})
        else:
            raise RuntimeError("could not allocate a unique session id")

        token = self._codec.issue(session.account_id, session.session_id, expires_at)
        logger.info(
            "Created session",
            extra={
                "account_id": session.account_id,
                "session": redact_session_id(session.session_id),
                "expires_at": expires_at,
            },
        )
        return IssuedSession(
            token=token,
            session_id=session.session_id,
            account_id=session.account_id,
            expires_at=expires_at,
        )

    def login(self, email: str, password: str, metadata: Optional[dict] = None) -> IssuedSession:
        """
        Check credentials with the account subsystem and start a session.

        Raises:
            LoginUnavailable: No credential verifier is configured
            InvalidCredentials: The verifier did not recognise the credentials
            StoreUnavailable: If the store cannot be reached
        """
        if self._verifier is None:
            raise LoginUnavailable()
        account_id = self._verifier.verify(email, password)
        if not account_id:
            logger.info("Login rejected", extra={"reason": "invalid_credentials"})
            raise InvalidCredentials()
        return self.create_session(account_id, metadata=metadata)

    def change_password(self, token: str, current_password: str, new_password: str) -> RevocationReport:
        """
        Change the caller's password, then log the account out everywhere.

        Raises:
            LoginUnavailable: No credential verifier is configured
            AuthError subclasses when the token does not authenticate or
                current_password is wrong
            StoreUnavailable: If the store cannot be reached
        """
        if self._verifier is None:
            raise LoginUnavailable()
        identity = self.authenticator.authenticate(token)
        if not self._verifier.change_password(identity.account_id, current_password, new_password):
            logger.info(
                "Credential change rejected",
                extra={"account_id": identity.account_id, "reason": "invalid_credentials"},
            )
            raise InvalidCredentials()
        return self.credentials_changed(identity.account_id)

    def authenticate(self, token: str) -> AuthenticatedIdentity:
        return self.authenticator.authenticate(token)

    def logout(self, token: str) -> AuthenticatedIdentity:
        """
        Revoke the session behind a token.

        Raises:
            AuthError subclasses when the token does not authenticate
            StoreUnavailable: If the store cannot be reached
        """
        identity = self.authenticator.authenticate(token)
        self._store.revoke(identity.session_id)
        return identity

    def revoke_all(self, account_id: str) -> RevocationReport:
        """Log out everywhere; best effort, never raises."""
        return self._store.revoke_all_for_account(account_id)

    def credentials_changed(self, account_id: str) -> RevocationReport:
        """
        Hook for the account subsystem after a password or key change.

        Every existing session of the account is revoked; the caller issues
        a fresh one if the change was made from a live session.
        """
        report = self.revoke_all(account_id)
        logger.info(
            "Revoked sessions after credential change",
            extra={"account_id": account_id, "revoked": report.revoked, "complete": report.complete},
        )
        return report

    def refresh(self, token: str, metadata: Optional[dict] = None) -> IssuedSession:
        """
        Explicit sliding expiration.

        Session expiry is immutable, so refreshing rotates: a new session
        (new id, full TTL) is issued and the old one revoked. If the old
        session cannot be revoked the new one is discarded and the store
        error propagates, leaving the caller on the old session.
        """
        identity = self.authenticator.authenticate(token)
        previous = self._store.get(identity.session_id)
        issued = self.create_session(
            identity.account_id,
            metadata=previous.metadata if metadata is None else metadata,
        )
        try:
            self._store.revoke(identity.session_id)
        except StoreUnavailable:
            self._discard(issued.session_id)
            raise
        logger.info(
            "Refreshed session",
            extra={
                "account_id": identity.account_id,
                "previous_session": redact_session_id(identity.session_id),
                "session": redact_session_id(issued.session_id),
            },
        )
        return issued

    def _discard(self, session_id: str) -> None:
        try:
            self._store.revoke(session_id)
        except StoreUnavailable as e:
            # The session still expires with its TTL
            logger.warning(
                "Could not discard session after failed rotation",
                extra={"session": redact_session_id(session_id), "operation": e.operation},
            )
