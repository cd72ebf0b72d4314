"""
Session authentication error hierarchy.

Provides:
- AuthError: base for every "not authenticated" outcome (HTTP 401)
- InvalidToken: tampered, malformed or desynchronised token (never retried)
- TokenExpired: embedded expiry reached (client must re-authenticate)
- SessionNotFound: session revoked or evicted from the store
- InvalidCredentials: login or credential change with the wrong password

Infrastructure faults are NOT AuthErrors: see kv_store.StoreUnavailable.
LoginUnavailable is a deployment fault, not an AuthError.
"""

from typing import Optional


class AuthError(Exception):
    """Base exception for authentication failures."""

    error_code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class InvalidToken(AuthError):
    """Token failed integrity checks or is structurally invalid."""

    error_code = "INVALID_TOKEN"

    def __init__(self, reason: str = "invalid token"):
        self.reason = reason
        super().__init__(reason)


class TokenExpired(AuthError):
    """Token's embedded expiry has passed."""

    error_code = "TOKEN_EXPIRED"

    def __init__(self, expired_at: Optional[int] = None):
        self.expired_at = expired_at
        super().__init__("token expired")


class SessionNotFound(AuthError):
    """Session is absent from the store (revoked, logged out or evicted)."""

    error_code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        super().__init__("session not found")


class InvalidCredentials(AuthError):
    """Email and password do not identify an account."""

    error_code = "INVALID_CREDENTIALS"

    def __init__(self):
        super().__init__("invalid credentials")


class LoginUnavailable(Exception):
    """No credential verifier is configured, so sessions cannot be issued."""

    def __init__(self, message: str = "login is not available"):
        self.message = message
        super().__init__(message)
