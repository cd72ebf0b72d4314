"""
Key-value backed session registry.

Key schema:
- session:{session_id}          -> JSON {account_id, issued_at, expires_at, revoked, metadata}
- session:account:{account_id}  -> SET of session ids (secondary index for fan-out revocation)

TTL policy: callers pass ttl = expires_at - now, the same expiry sealed into
the token, so a store entry never outlives what the token codec accepts and
never disappears before it.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional

from saas_gate.platform.kv_store import KeyValueStore, StoreUnavailable
from saas_gate.sessions.errors import SessionNotFound

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
ACCOUNT_INDEX_PREFIX = "session:account:"


def _session_key(session_id: str) -> str:
    return f"{SESSION_KEY_PREFIX}{session_id}"


def _account_key(account_id: str) -> str:
    return f"{ACCOUNT_INDEX_PREFIX}{account_id}"


def redact_session_id(session_id: str) -> str:
    """Short prefix of a session id that is safe to log."""
    return f"{session_id[:6]}..." if session_id else ""


@dataclass(frozen=True)
class Session:
    """One logged-in context. expires_at is immutable once stored."""

    session_id: str
    account_id: str
    issued_at: int
    expires_at: int
    revoked: bool = False
    metadata: dict = field(default_factory=dict)

    def to_json(self) -> str:
        data = asdict(self)
        data.pop("session_id")
        return json.dumps(data)

    @classmethod
    def from_json(cls, session_id: str, raw: str) -> "Session":
        data = json.loads(raw)
        return cls(
            session_id=session_id,
            account_id=str(data["account_id"]),
            issued_at=int(data["issued_at"]),
            expires_at=int(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            metadata=data.get("metadata") or {},
        )


@dataclass
class RevocationReport:
    """Outcome of a best-effort log-out-everywhere."""

    account_id: str
    revoked: int = 0
    failed: List[str] = field(default_factory=list)
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def complete(self) -> bool:
        return not self.failed and not self.timed_out and self.error is None


class SessionStore:
    """
    Session registry on top of a KeyValueStore.

    get() is a pure read. Store faults propagate as StoreUnavailable except
    in revoke_all_for_account, which reports them instead.
    """

    def __init__(
        self,
        kv_store: KeyValueStore,
        revoke_all_timeout_seconds: float = 2.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._kv = kv_store
        self._revoke_all_timeout = revoke_all_timeout_seconds
        self._monotonic = monotonic

    def put(self, session: Session, ttl_seconds: int) -> None:
        """
        Register a new session with the given TTL.

        Raises:
            ValueError: If the session id is already registered
            StoreUnavailable: If the store cannot be reached
        """
        ttl = max(int(ttl_seconds), 1)
        created = self._kv.set(_session_key(session.session_id), session.to_json(), ttl, only_if_absent=True)
        if not created:
            raise ValueError("session id already registered")

        self._kv.add_to_set(_account_key(session.account_id), session.session_id, ttl)

        logger.info(
            "Stored session",
            extra={
                "session": redact_session_id(session.session_id),
                "account_id": session.account_id,
                "ttl_seconds": ttl,
            },
        )

    def get(self, session_id: str) -> Session:
        """
        Fetch a live session.

        Raises:
            SessionNotFound: Absent, expired or revoked
            StoreUnavailable: If the store cannot be reached
        """
        raw = self._kv.get(_session_key(session_id))
        if raw is None:
            raise SessionNotFound(session_id)
        try:
            session = Session.from_json(session_id, raw)
        except (ValueError, KeyError, TypeError):
            logger.error(
                "Unreadable session record",
                extra={"session": redact_session_id(session_id)},
            )
            raise SessionNotFound(session_id)
        if session.revoked:
            raise SessionNotFound(session_id)
        return session

    def revoke(self, session_id: str) -> bool:
        """
        Destroy a session. Returns False when it was already gone.

        Raises:
            StoreUnavailable: If the store cannot be reached
        """
        raw = self._kv.get(_session_key(session_id))
        removed = self._kv.delete(_session_key(session_id)) > 0
        if raw is not None:
            try:
                account_id = str(json.loads(raw)["account_id"])
            except (ValueError, KeyError, TypeError):
                account_id = None
            if account_id:
                self._kv.remove_from_set(_account_key(account_id), session_id)

        logger.info(
            "Revoked session",
            extra={"session": redact_session_id(session_id), "existed": removed},
        )
        return removed

    def list_for_account(self, account_id: str) -> List[str]:
        """Session ids currently indexed for the account."""
        return sorted(self._kv.set_members(_account_key(account_id)))

    def revoke_all_for_account(self, account_id: str, timeout_seconds: Optional[float] = None) -> RevocationReport:
        """
        Revoke every session of an account, bounded by a deadline.

        Never raises: store faults and the deadline are recorded on the
        returned report so the triggering action can proceed.
        """
        report = RevocationReport(account_id=account_id)
        budget = self._revoke_all_timeout if timeout_seconds is None else timeout_seconds
        deadline = self._monotonic() + budget
        index_key = _account_key(account_id)

        try:
            session_ids = sorted(self._kv.set_members(index_key))
        except StoreUnavailable as e:
            report.error = str(e)
            logger.warning(
                "Failed to read session index for revocation",
                extra={"account_id": account_id},
                exc_info=True,
            )
            return report

        for session_id in session_ids:
            if self._monotonic() >= deadline:
                report.timed_out = True
                break
            try:
                self._kv.delete(_session_key(session_id))
                self._kv.remove_from_set(index_key, session_id)
                report.revoked += 1
            except StoreUnavailable:
                report.failed.append(session_id)
                logger.warning(
                    "Failed to revoke session during fan-out",
                    extra={"account_id": account_id, "session": redact_session_id(session_id)},
                    exc_info=True,
                )

        log = logger.info if report.complete else logger.warning
        log(
            "Revoked all sessions for account",
            extra={
                "account_id": account_id,
                "revoked_count": report.revoked,
                "failed_count": len(report.failed),
                "timed_out": report.timed_out,
            },
        )
        return report
