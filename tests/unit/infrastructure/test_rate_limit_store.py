"""Tests for the Redis store adapter."""

from unittest.mock import Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ratelimiter.core.circuit_breaker import CircuitBreaker
from ratelimiter.core.exceptions import ConfigurationError, StoreUnavailableError
from ratelimiter.core.metrics import metrics_collector
from ratelimiter.infrastructure.rate_limiting.store import (
    RedisRateLimitStore,
    encode_arg,
    parse_script_result,
)

NOW_MS = 1_700_000_400_000


class TestHelpers:
    @pytest.mark.parametrize(
        "value,expected",
        [(True, "1"), (False, "0"), (2.0, "2"), (0.5, "0.5"), (10, "10"), ("node-a", "node-a")],
    )
    def test_encode_arg(self, value, expected):
        assert encode_arg(value) == expected

    def test_parse_script_result(self):
        assert parse_script_result("counter", [1, "2", 3.0, "4"]) == [1, 2, 3, 4]

    @pytest.mark.parametrize("result", [None, [1, 2, 3], [1, 2, 3, 4, 5], "1234", [1, 2, "x", 4]])
    def test_parse_script_result_malformed(self, result):
        with pytest.raises(StoreUnavailableError):
            parse_script_result("counter", result)


class TestScripts:
    def test_eval_script(self, store):
        result = store.eval_script("fixed_window", "demo", [10, 3, NOW_MS, 1])

        assert result == [1, 2, NOW_MS + 10_000, 1]

    def test_unknown_script(self, store):
        with pytest.raises(ConfigurationError):
            store.eval_script("round_robin", "demo", [])

    def test_script_reloaded_after_flush(self, store, redis_client):
        """EVALSHA falls back to loading the script after SCRIPT FLUSH."""
        store.eval_script("counter", "demo", [10, 3, NOW_MS, 1])
        redis_client.script_flush()

        assert store.eval_script("counter", "demo", [10, 3, NOW_MS, 1])[0] == 1

    def test_eval_records_metrics(self, store):
        store.eval_script("counter", "demo", [10, 3, NOW_MS, 1])

        assert metrics_collector.get_metrics()["store"]["eval_script"]["success_count"] == 1

    def test_without_async_client(self, store):
        assert store.supports_async is False
        with pytest.raises(ConfigurationError):
            store.apipeline()

    @pytest.mark.asyncio
    async def test_aeval_script(self, async_store):
        assert async_store.supports_async is True

        result = await async_store.aeval_script("sliding_window", "demo", [10, 5, NOW_MS, 10])

        assert result == [1, 4, NOW_MS + 1000, 1]

    @pytest.mark.asyncio
    async def test_aeval_without_async_client(self, store):
        with pytest.raises(ConfigurationError):
            await store.aeval_script("counter", "demo", [10, 3, NOW_MS, 1])


class TestFailures:
    def test_connection_failure(self, broken_store):
        with pytest.raises(StoreUnavailableError):
            broken_store.eval_script("counter", "demo", [10, 3, NOW_MS, 1])

    @pytest.mark.asyncio
    async def test_async_connection_failure(self, broken_store):
        with pytest.raises(StoreUnavailableError):
            await broken_store.aeval_script("counter", "demo", [10, 3, NOW_MS, 1])

    def test_open_circuit(self):
        client = Mock()
        client.register_script.return_value = Mock(side_effect=RedisConnectionError("refused"))
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60, name="unit")
        store = RedisRateLimitStore(client, breaker=breaker)

        for _ in range(2):
            with pytest.raises(StoreUnavailableError):
                store.eval_script("counter", "demo", [10, 3, NOW_MS, 1])

        script = client.register_script.return_value
        script.reset_mock()
        with pytest.raises(StoreUnavailableError) as exc_info:
            store.eval_script("counter", "demo", [10, 3, NOW_MS, 1])

        script.assert_not_called()
        assert "open" in str(exc_info.value)

    def test_health_check_unhealthy(self, broken_store):
        health = broken_store.health_check()

        assert health["healthy"] is False
        assert health["error"]


class TestKeyOperations:
    def test_scan_delete_ttl(self, store, redis_client):
        redis_client.set("rate_limit:a:1", "x", ex=100)
        redis_client.set("rate_limit:a:2", "x")
        redis_client.set("other:a:3", "x")

        keys = store.scan_keys("rate_limit:*")

        assert sorted(keys) == ["rate_limit:a:1", "rate_limit:a:2"]
        assert 0 < store.ttl("rate_limit:a:1") <= 100
        assert store.ttl("rate_limit:a:2") == -1
        assert store.delete(*keys) == 2
        assert store.delete() == 0
        assert store.ttl("rate_limit:a:1") == -2

    def test_set_values_only_if_absent(self, store, redis_client):
        redis_client.set("created", "old")

        store.set_values({"tokens": 5, "created": "new"}, ttl=60, only_if_absent=["created"])

        assert redis_client.get("tokens") == "5"
        assert redis_client.get("created") == "old"
        assert 0 < redis_client.ttl("tokens") <= 60

    def test_reads(self, store, redis_client):
        redis_client.hset("h", mapping={"a": "1"})
        redis_client.zadd("z", {"low": 1, "high": 5})
        redis_client.sadd("s", "m")
        redis_client.lpush("l", "first", "second")

        assert store.read_hash("h") == {"a": "1"}
        assert store.read_sorted_set("z") == [("high", 5.0), ("low", 1.0)]
        assert store.read_sorted_set("z", 0, 0) == [("high", 5.0)]
        assert store.read_set("s") == {"m"}
        assert store.read_list("l") == ["second", "first"]

    def test_pipeline(self, store, redis_client):
        pipe = store.pipeline()
        pipe.incr("counter")
        pipe.incr("counter")

        assert store.execute_pipeline(pipe) == [1, 2]

    def test_health_check(self, store):
        health = store.health_check()

        assert health["healthy"] is True
        assert health["circuit"] == "closed"
        assert health["latency_ms"] >= 0
