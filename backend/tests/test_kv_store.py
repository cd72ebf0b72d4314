"""
Tests for the key-value store implementations.

Verifies:
- RedisKeyValueStore issues the expected commands (mock redis client)
- Redis errors surface as StoreUnavailable; ping reports False instead
- InMemoryKeyValueStore honours TTLs, NX and set semantics
"""

from unittest.mock import Mock, patch

import pytest
import redis as redis_lib

from saas_gate.platform.kv_store import InMemoryKeyValueStore, RedisKeyValueStore, StoreUnavailable


class TestRedisKeyValueStore:
    """RedisKeyValueStore against a mock client."""

    def _create_store(self, mock_redis):
        return RedisKeyValueStore("redis://localhost:6379/0", timeout_seconds=1.5, client=mock_redis)

    def test_connection_is_lazy_with_timeouts(self):
        with patch("saas_gate.platform.kv_store.redis.from_url") as from_url:
            store = RedisKeyValueStore("redis://cache:6379/1", timeout_seconds=1.5)
            from_url.assert_not_called()

            store.get("k")

        from_url.assert_called_once_with(
            "redis://cache:6379/1",
            decode_responses=True,
            socket_connect_timeout=1.5,
            socket_timeout=1.5,
        )

    def test_set_with_ttl_and_nx(self):
        mock_redis = Mock()
        mock_redis.set.return_value = None  # NX refused
        store = self._create_store(mock_redis)

        created = store.set("session:abc", "{}", 60, only_if_absent=True)

        assert created is False
        mock_redis.set.assert_called_once_with("session:abc", "{}", ex=60, nx=True)

    def test_incr_with_expiry_uses_transaction(self):
        mock_redis = Mock()
        pipe = Mock()
        pipe.execute.return_value = [3, True]
        mock_redis.pipeline.return_value = pipe
        store = self._create_store(mock_redis)

        count = store.incr_with_expiry("ratelimit:r:c:1", 60)

        assert count == 3
        mock_redis.pipeline.assert_called_once_with(transaction=True)
        pipe.incr.assert_called_once_with("ratelimit:r:c:1")
        pipe.expire.assert_called_once_with("ratelimit:r:c:1", 60)

    def test_add_to_set_extends_short_ttl(self):
        mock_redis = Mock()
        pipe = Mock()
        pipe.execute.return_value = [1, -1]  # sadd, ttl (no expiry yet)
        mock_redis.pipeline.return_value = pipe
        store = self._create_store(mock_redis)

        store.add_to_set("session:account:acct_1", "sess_1", 3600)

        pipe.sadd.assert_called_once_with("session:account:acct_1", "sess_1")
        mock_redis.expire.assert_called_once_with("session:account:acct_1", 3600)

    def test_add_to_set_keeps_longer_ttl(self):
        mock_redis = Mock()
        pipe = Mock()
        pipe.execute.return_value = [1, 7200]
        mock_redis.pipeline.return_value = pipe
        store = self._create_store(mock_redis)

        store.add_to_set("session:account:acct_1", "sess_1", 3600)

        mock_redis.expire.assert_not_called()

    def test_set_members(self):
        mock_redis = Mock()
        mock_redis.smembers.return_value = {"a", "b"}
        store = self._create_store(mock_redis)

        assert store.set_members("session:account:acct_1") == {"a", "b"}

    @pytest.mark.parametrize("error", [
        redis_lib.ConnectionError("Redis down"),
        redis_lib.TimeoutError("slow"),
        redis_lib.RedisError("boom"),
    ])
    def test_redis_errors_become_store_unavailable(self, error):
        mock_redis = Mock()
        mock_redis.get.side_effect = error
        store = self._create_store(mock_redis)

        with pytest.raises(StoreUnavailable) as exc_info:
            store.get("session:abc")

        assert exc_info.value.operation == "get"
        assert exc_info.value.cause is error

    def test_pipeline_failure_becomes_store_unavailable(self):
        mock_redis = Mock()
        pipe = Mock()
        pipe.execute.side_effect = redis_lib.ConnectionError("Redis down")
        mock_redis.pipeline.return_value = pipe
        store = self._create_store(mock_redis)

        with pytest.raises(StoreUnavailable):
            store.incr_with_expiry("ratelimit:r:c:1", 60)

    def test_ping_reports_false_on_error(self):
        mock_redis = Mock()
        mock_redis.ping.side_effect = redis_lib.ConnectionError("Redis down")
        store = self._create_store(mock_redis)

        assert store.ping() is False

    def test_store_unavailable_hides_detail(self):
        error = StoreUnavailable("get", redis_lib.ConnectionError("10.0.0.5:6379 refused"))

        assert "10.0.0.5" not in str(error.to_dict())


class TestInMemoryKeyValueStore:
    """In-process store semantics."""

    def test_value_expires_after_ttl(self, kv_store, clock):
        kv_store.set("k", "v", 10)

        clock.advance(9)
        assert kv_store.get("k") == "v"

        clock.advance(1)
        assert kv_store.get("k") is None

    def test_nx_refuses_live_key_but_not_expired_one(self, kv_store, clock):
        assert kv_store.set("k", "v1", 10, only_if_absent=True) is True
        assert kv_store.set("k", "v2", 10, only_if_absent=True) is False
        assert kv_store.get("k") == "v1"

        clock.advance(10)
        assert kv_store.set("k", "v3", 10, only_if_absent=True) is True

    def test_incr_counts_within_ttl(self, kv_store, clock):
        assert [kv_store.incr_with_expiry("c", 60) for _ in range(3)] == [1, 2, 3]

        clock.advance(60)
        assert kv_store.incr_with_expiry("c", 60) == 1

    def test_delete_counts_existing_keys(self, kv_store):
        kv_store.set("a", "1", 10)

        assert kv_store.delete("a", "b") == 1
        assert kv_store.delete() == 0

    def test_set_operations(self, kv_store):
        kv_store.add_to_set("s", "a", 10)
        kv_store.add_to_set("s", "b", 10)
        kv_store.remove_from_set("s", "a")

        assert kv_store.set_members("s") == {"b"}

        kv_store.remove_from_set("s", "b")
        assert kv_store.ttl("s") == -2
        assert kv_store.set_members("missing") == set()

    def test_ttl_reporting(self, kv_store):
        kv_store.set("k", "v", 30)

        assert kv_store.ttl("k") == 30
        assert kv_store.ttl("missing") == -2

    def test_ping(self):
        assert InMemoryKeyValueStore().ping() is True
