"""
Key-value store used by the session registry and rate-limit buckets.

Provides:
- KeyValueStore: the primitives the core relies on (GET/SET with TTL and
  NX, DEL, atomic INCR with expiry, set add/remove/members, PING)
- RedisKeyValueStore: redis-py backed implementation for production
- InMemoryKeyValueStore: thread-safe in-process implementation for tests
  and local development

The store is the concurrency boundary: every mutating primitive is a single
atomic operation (or a MULTI/EXEC transaction) on the backing store. Any
backend fault is raised as StoreUnavailable so callers can fail closed.

Configuration (environment variables, read by load_settings):
- REDIS_URL:             Redis connection URL (default: "redis://localhost:6379/0")
- STORE_TIMEOUT_SECONDS: Socket connect/read timeout (default: "2.0")
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Set, Tuple

import redis

logger = logging.getLogger(__name__)


class StoreUnavailable(Exception):
    """
    Raised when the key-value store cannot be reached or errors.

    Infrastructure fault: callers must fail closed (treat as
    unauthenticated / rate limited) and surface a generic 503.
    """

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        self.error_code = "STORE_UNAVAILABLE"
        super().__init__(f"Key-value store unavailable during {operation}")

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": "Service temporarily unavailable"}


class KeyValueStore(ABC):
    """Primitives required from the backing key-value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value at key, or None when absent or expired."""

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int, only_if_absent: bool = False) -> bool:
        """
        Store value with a TTL.

        Returns False only when only_if_absent is set and the key exists.
        """

    @abstractmethod
    def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""

    @abstractmethod
    def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        """Atomically increment a counter and (re)apply its TTL."""

    @abstractmethod
    def add_to_set(self, key: str, member: str, min_ttl_seconds: int) -> None:
        """Add member to the set at key, keeping its TTL at least min_ttl_seconds."""

    @abstractmethod
    def remove_from_set(self, key: str, member: str) -> None:
        """Remove member from the set at key."""

    @abstractmethod
    def set_members(self, key: str) -> Set[str]:
        """Return the members of the set at key (empty when absent)."""

    @abstractmethod
    def ping(self) -> bool:
        """Return True when the store is reachable."""


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store.

    The connection is created lazily on first use so the module can be
    imported (and the app constructed) before Redis is available. All
    commands run with bounded socket timeouts.
    """

    def __init__(
        self,
        redis_url: str,
        timeout_seconds: float = 2.0,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.timeout_seconds = timeout_seconds
        self._redis: Optional[redis.Redis] = client

    def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=self.timeout_seconds,
                socket_timeout=self.timeout_seconds,
            )
        return self._redis

    def _fail(self, operation: str, exc: Exception) -> StoreUnavailable:
        logger.warning(
            "Redis command failed",
            extra={
                "operation": operation,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        return StoreUnavailable(operation, exc)

    def get(self, key: str) -> Optional[str]:
        try:
            return self._get_redis().get(key)
        except redis.RedisError as exc:
            raise self._fail("get", exc) from exc

    def set(self, key: str, value: str, ttl_seconds: int, only_if_absent: bool = False) -> bool:
        try:
            result = self._get_redis().set(key, value, ex=ttl_seconds, nx=only_if_absent)
        except redis.RedisError as exc:
            raise self._fail("set", exc) from exc
        return bool(result)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self._get_redis().delete(*keys))
        except redis.RedisError as exc:
            raise self._fail("delete", exc) from exc

    def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        try:
            pipe = self._get_redis().pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, ttl_seconds)
            results = pipe.execute()
        except redis.RedisError as exc:
            raise self._fail("incr", exc) from exc
        return int(results[0])

    def add_to_set(self, key: str, member: str, min_ttl_seconds: int) -> None:
        try:
            r = self._get_redis()
            pipe = r.pipeline(transaction=True)
            pipe.sadd(key, member)
            pipe.ttl(key)
            results = pipe.execute()
            current_ttl = results[1]
            # -1: no expiry set yet, -2: key vanished in between
            if current_ttl is None or current_ttl < min_ttl_seconds:
                r.expire(key, min_ttl_seconds)
        except redis.RedisError as exc:
            raise self._fail("sadd", exc) from exc

    def remove_from_set(self, key: str, member: str) -> None:
        try:
            self._get_redis().srem(key, member)
        except redis.RedisError as exc:
            raise self._fail("srem", exc) from exc

    def set_members(self, key: str) -> Set[str]:
        try:
            members = self._get_redis().smembers(key)
        except redis.RedisError as exc:
            raise self._fail("smembers", exc) from exc
        return {m.decode("utf-8") if isinstance(m, bytes) else str(m) for m in members or ()}

    def ping(self) -> bool:
        try:
            return bool(self._get_redis().ping())
        except redis.RedisError:
            logger.warning("Redis ping failed", exc_info=True)
            return False


class InMemoryKeyValueStore(KeyValueStore):
    """
    In-process store with the same semantics as RedisKeyValueStore.

    Expiry is evaluated lazily against an injectable clock, so tests can
    move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[object, Optional[float]]] = {}

    def _live(self, key: str):
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._values[key]
            return None
        return entry

    def _expiry(self, ttl_seconds: int) -> float:
        return self._clock() + ttl_seconds

    def ttl(self, key: str) -> int:
        """Remaining TTL in whole seconds, -1 without expiry, -2 when absent."""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return int(math.ceil(entry[1] - self._clock()))

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            value = entry[0]
            if isinstance(value, set):
                raise TypeError(f"{key} holds a set")
            return str(value)

    def set(self, key: str, value: str, ttl_seconds: int, only_if_absent: bool = False) -> bool:
        with self._lock:
            if only_if_absent and self._live(key) is not None:
                return False
            self._values[key] = (value, self._expiry(ttl_seconds))
            return True

    def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._values[key]
                    removed += 1
            return removed

    def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            entry = self._live(key)
            count = int(entry[0]) + 1 if entry is not None else 1
            self._values[key] = (str(count), self._expiry(ttl_seconds))
            return count

    def add_to_set(self, key: str, member: str, min_ttl_seconds: int) -> None:
        with self._lock:
            entry = self._live(key)
            members = set(entry[0]) if entry is not None else set()
            members.add(member)
            expires_at = entry[1] if entry is not None else None
            floor = self._expiry(min_ttl_seconds)
            if expires_at is None or expires_at < floor:
                expires_at = floor
            self._values[key] = (members, expires_at)

    def remove_from_set(self, key: str, member: str) -> None:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return
            members = set(entry[0])
            members.discard(member)
            if members:
                self._values[key] = (members, entry[1])
            else:
                del self._values[key]

    def set_members(self, key: str) -> Set[str]:
        with self._lock:
            entry = self._live(key)
            return set(entry[0]) if entry is not None else set()

    def ping(self) -> bool:
        return True
