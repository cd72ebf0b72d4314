"""
Rate limiting using fixed-window counters in the key-value store.

Protects every route with a per-route, per-client request budget.

Features:
- Per-route limits from the static RATE_LIMITS table (unknown routes use the default)
- Client is the authenticated account when a valid token is presented, else the client IP
- Returns 429 with Retry-After header when exceeded
- Emits rate_limit.triggered audit event via structured logging
- Fails closed if the store is unavailable (request rejected, warning logged)

Algorithm:
1. window_index = floor(now / window_seconds)
2. Key ``ratelimit:{route_id}:{client_id}:{window_index}``
3. INCR + EXPIRE in one transaction
4. count > limit -> rejected, retry after the window ends

A client can burst up to 2x the limit across a window boundary; that is
accepted in exchange for one round trip per request.

Usage (FastAPI dependency injection):
    from saas_gate.middleware.rate_limit import rate_limit_dependency

    @router.get("/api/entitlements/me")
    async def get_my_entitlement(
        _rate_limit=Depends(rate_limit_dependency("entitlements.me")),
    ):
        ...
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, ClassVar, Union

from fastapi import Request

from saas_gate.config.settings import RateLimitSettings
from saas_gate.platform.bearer import extract_bearer_token
from saas_gate.platform.errors import RateLimitError
from saas_gate.platform.kv_store import KeyValueStore, StoreUnavailable
from saas_gate.sessions.errors import AuthError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rate limit result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Allowed:
    """
    The request fits in the current window.

    Attributes:
        remaining: Requests left in the current window.
        limit:     Maximum requests per window.
        reset_at:  Unix timestamp when the current window ends.
    """

    remaining: int
    limit: int
    reset_at: float
    allowed: ClassVar[bool] = True


@dataclass(frozen=True)
class Rejected:
    """
    The request exceeded the budget (or the store could not be consulted).

    Attributes:
        retry_after: Whole seconds until the window ends (at least 1).
        limit:       Maximum requests per window.
        reset_at:    Unix timestamp when the current window ends.
    """

    retry_after: int
    limit: int
    reset_at: float
    allowed: ClassVar[bool] = False


RateLimitResult = Union[Allowed, Rejected]


# ---------------------------------------------------------------------------
# RateLimiter class
# ---------------------------------------------------------------------------

class RateLimiter:
    """Fixed-window rate limiter over a KeyValueStore."""

    def __init__(
        self,
        kv_store: KeyValueStore,
        settings: RateLimitSettings,
        clock: Callable[[], float] = time.time,
    ):
        self._store = kv_store
        self.settings = settings
        self._clock = clock

    @staticmethod
    def bucket_key(route_id: str, client_id: str, window_index: int) -> str:
        return f"ratelimit:{route_id}:{client_id}:{window_index}"

    def allow(self, route_id: str, client_id: str) -> RateLimitResult:
        """
        Count this request against the client's budget for the route.

        Args:
            route_id:  Logical route name (e.g. ``"identity.session"``).
            client_id: Stable client identity (account or IP).

        Returns:
            :class:`Allowed` or :class:`Rejected`.
        """
        route_limit = self.settings.for_route(route_id)
        window = route_limit.window_seconds

        now = self._clock()
        window_index = int(now // window)
        window_end = (window_index + 1) * window
        retry_after = max(1, int(math.ceil(window_end - now)))

        key = self.bucket_key(route_id, client_id, window_index)
        try:
            count = self._store.incr_with_expiry(key, window)
        except StoreUnavailable as exc:
            logger.warning(
                "Store unavailable for rate limiting - rejecting request (fail-closed)",
                extra={
                    "error": str(exc),
                    "route_id": route_id,
                    "client_id": client_id,
                },
            )
            return Rejected(retry_after=retry_after, limit=route_limit.limit, reset_at=window_end)

        if count > route_limit.limit:
            return Rejected(retry_after=retry_after, limit=route_limit.limit, reset_at=window_end)

        return Allowed(
            remaining=max(0, route_limit.limit - count),
            limit=route_limit.limit,
            reset_at=window_end,
        )


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

def client_identifier(request: Request) -> str:
    """
    Identify the caller for bucketing.

    A token whose signature and expiry verify yields ``account:{id}``;
    anything else is bucketed by client IP. Only the codec is consulted so
    the check stays free of store round trips.
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    codec = getattr(request.app.state, "token_codec", None)
    if token and codec is not None:
        try:
            return f"account:{codec.verify(token).account_id}"
        except AuthError:
            pass
    host = request.client.host if request.client else "unknown"
    return f"ip:{host}"


def rate_limit_dependency(route_id: str) -> Callable:
    """
    Create a FastAPI dependency that enforces the route's rate limit.

    Returns an async function suitable for use with ``Depends()``. The
    limiter is read from ``request.app.state.rate_limiter``.

    Raises (from the dependency):
        RateLimitError: 429 with Retry-After
    """

    async def _dependency(request: Request) -> RateLimitResult:
        limiter: RateLimiter = request.app.state.rate_limiter
        client_id = client_identifier(request)
        result = limiter.allow(route_id, client_id)

        if not result.allowed:
            # Emit structured audit log (no DB session required).
            logger.warning(
                "Rate limit triggered",
                extra={
                    "action": "rate_limit.triggered",
                    "client_id": client_id,
                    "route_id": route_id,
                    "limit": result.limit,
                    "retry_after": result.retry_after,
                    "reset_at": result.reset_at,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            raise RateLimitError(retry_after=result.retry_after, limit=result.limit)

        return result

    return _dependency
