"""
Request and response schemas for the identity (session) API.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from saas_gate.sessions.service import IssuedSession
from saas_gate.sessions.session_store import RevocationReport, redact_session_id


class SessionResponse(BaseModel):
    """The caller's current session."""

    account_id: str
    session: str
    expires_at: datetime

    @classmethod
    def from_identity(cls, identity) -> "SessionResponse":
        return cls(
            account_id=identity.account_id,
            session=redact_session_id(identity.session_id),
            expires_at=datetime.fromtimestamp(identity.expires_at, tz=timezone.utc),
        )


class LoginRequest(BaseModel):
    """Email and password, checked by the account subsystem."""

    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=100)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=100)
    new_password: str = Field(..., min_length=8, max_length=100)

    @model_validator(mode="after")
    def _must_differ(self) -> "ChangePasswordRequest":
        if self.new_password == self.current_password:
            raise ValueError("new_password must differ from current_password")
        return self


class TokenResponse(BaseModel):
    """A newly issued session token (login or refresh)."""

    token: str
    token_type: str = "Bearer"
    account_id: str
    expires_at: datetime
    expires_in: int

    @classmethod
    def from_issued(cls, issued: IssuedSession, expires_in: int) -> "TokenResponse":
        return cls(
            token=issued.token,
            account_id=issued.account_id,
            expires_at=datetime.fromtimestamp(issued.expires_at, tz=timezone.utc),
            expires_in=expires_in,
        )


class LogoutResponse(BaseModel):
    revoked: bool
    message: str


class RevokeAllResponse(BaseModel):
    """Outcome of log-out-everywhere. Partial results are still 200."""

    account_id: str
    revoked: int
    failed: int
    timed_out: bool
    complete: bool
    message: Optional[str] = None

    @classmethod
    def from_report(cls, report: RevocationReport) -> "RevokeAllResponse":
        if report.complete:
            message = "All sessions revoked"
        else:
            message = "Some sessions could not be revoked; retry to finish"
        return cls(
            account_id=report.account_id,
            revoked=report.revoked,
            failed=len(report.failed),
            timed_out=report.timed_out,
            complete=report.complete,
            message=message,
        )
