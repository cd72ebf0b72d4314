"""
Signed, time-bound session tokens.

A token is a JWS (PyJWT, HMAC) over {sub, sid, exp, iat, iss}. It is NOT
encrypted: the payload carries identifiers only. Integrity and expiry are
checked without touching the session store; the store decides liveness.

Key rotation: keys are held newest-first. issue() signs with the newest,
verify() tries each key in order until one validates.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Sequence

import jwt

from saas_gate.sessions.errors import InvalidToken, TokenExpired

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["sub", "sid", "exp"]


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of a session token."""

    session_id: str
    account_id: str
    expires_at: int


class TokenCodec:
    """Issues and verifies session tokens with a newest-first key list."""

    def __init__(
        self,
        signing_keys: Sequence[str],
        algorithm: str = "HS512",
        issuer: str = "saas-gate",
        clock: Callable[[], float] = time.time,
    ):
        keys = tuple(k for k in signing_keys if k)
        if not keys:
            raise ValueError("TokenCodec requires at least one signing key")
        self._keys = keys
        self._algorithm = algorithm
        self._issuer = issuer
        self._clock = clock

    def issue(self, account_id: str, session_id: str, expires_at: int) -> str:
        """
        Seal (account_id, session_id, expires_at) into a token.

        Args:
            account_id: Owning account
            session_id: Session registry key
            expires_at: Unix timestamp after which the token is rejected

        Returns:
            Compact opaque token string
        """
        payload = {
            "sub": str(account_id),
            "sid": session_id,
            "exp": int(expires_at),
            "iat": int(self._clock()),
            "iss": self._issuer,
        }
        return jwt.encode(payload, self._keys[0], algorithm=self._algorithm)

    def verify(self, token: str) -> TokenClaims:
        """
        Check integrity and expiry of a token.

        Raises:
            InvalidToken: Malformed, forged, or signed by no known key
            TokenExpired: Current time is at or past the embedded expiry
        """
        if not token or not isinstance(token, str):
            raise InvalidToken("empty token")

        payload = None
        for index, key in enumerate(self._keys):
            try:
                payload = jwt.decode(
                    token,
                    key,
                    algorithms=[self._algorithm],
                    issuer=self._issuer,
                    options={
                        "verify_exp": False,
                        "verify_iat": False,
                        "require": REQUIRED_CLAIMS,
                    },
                )
            except jwt.InvalidSignatureError:
                continue
            except jwt.PyJWTError as e:
                raise InvalidToken(f"malformed token: {type(e).__name__}") from e
            if index > 0:
                logger.info("Session token verified with a previous signing key", extra={"key_index": index})
            break

        if payload is None:
            raise InvalidToken("signature mismatch")

        session_id = payload.get("sid")
        account_id = payload.get("sub")
        expires_at = payload.get("exp")
        if not isinstance(session_id, str) or not session_id or not account_id:
            raise InvalidToken("missing identifiers")
        if not isinstance(expires_at, int):
            raise InvalidToken("invalid exp claim")

        if self._clock() >= expires_at:
            raise TokenExpired(expires_at)

        return TokenClaims(session_id=session_id, account_id=str(account_id), expires_at=expires_at)
