"""Cross-cutting platform pieces: key-value store, HTTP errors, health checks."""

from saas_gate.platform.bearer import extract_bearer_token
from saas_gate.platform.kv_store import (
    InMemoryKeyValueStore,
    KeyValueStore,
    RedisKeyValueStore,
    StoreUnavailable,
)

__all__ = [
    "extract_bearer_token",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "RedisKeyValueStore",
    "StoreUnavailable",
]
