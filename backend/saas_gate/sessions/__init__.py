"""
Session lifecycle and request authentication.

Exports:
- TokenCodec, TokenClaims: signed, time-bound tokens
- SessionStore, Session, RevocationReport: key-value backed registry
- SessionAuthenticator, AuthenticatedIdentity: authenticate(token)
- SessionService, IssuedSession: login, logout, log out everywhere, refresh
- CredentialVerifier: the account subsystem's password check
- AuthError, InvalidToken, TokenExpired, SessionNotFound, InvalidCredentials
- LoginUnavailable
"""

from saas_gate.sessions.authenticator import AuthenticatedIdentity, SessionAuthenticator
from saas_gate.sessions.credentials import CredentialVerifier
from saas_gate.sessions.errors import (
    AuthError,
    InvalidCredentials,
    InvalidToken,
    LoginUnavailable,
    SessionNotFound,
    TokenExpired,
)
from saas_gate.sessions.service import IssuedSession, SessionService
from saas_gate.sessions.session_store import RevocationReport, Session, SessionStore
from saas_gate.sessions.token_codec import TokenClaims, TokenCodec

__all__ = [
    "AuthError",
    "AuthenticatedIdentity",
    "CredentialVerifier",
    "InvalidCredentials",
    "InvalidToken",
    "IssuedSession",
    "LoginUnavailable",
    "RevocationReport",
    "Session",
    "SessionAuthenticator",
    "SessionNotFound",
    "SessionService",
    "SessionStore",
    "TokenClaims",
    "TokenCodec",
    "TokenExpired",
]
