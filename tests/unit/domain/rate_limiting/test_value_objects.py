"""Tests for rate limiting value objects."""

import pytest

from ratelimiter.core.exceptions import ConfigurationError, InvalidArgumentError
from ratelimiter.domain.rate_limiting.value_objects import (
    DistributedTokenBucketParams,
    HotspotParams,
    RateLimitKey,
    RateLimitRule,
    RateLimitStrategy,
    RateLimitType,
    SlidingWindowParams,
    TokenBucketParams,
    escape_glob,
    validate_identity,
)


class TestRateLimitStrategy:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("fixed_window", RateLimitStrategy.FIXED_WINDOW),
            ("SLIDING_WINDOW", RateLimitStrategy.SLIDING_WINDOW),
            ("token-bucket", RateLimitStrategy.TOKEN_BUCKET),
            (" hotspot ", RateLimitStrategy.HOTSPOT),
            (RateLimitStrategy.COUNTER, RateLimitStrategy.COUNTER),
        ],
    )
    def test_parse(self, raw, expected):
        assert RateLimitStrategy.parse(raw) is expected

    @pytest.mark.parametrize("raw", ["round_robin", "", None, 3])
    def test_parse_unknown(self, raw):
        with pytest.raises(ConfigurationError):
            RateLimitStrategy.parse(raw)

    def test_bucket_strategies(self):
        buckets = {strategy for strategy in RateLimitStrategy if strategy.is_bucket}

        assert buckets == {
            RateLimitStrategy.TOKEN_BUCKET,
            RateLimitStrategy.LEAKY_BUCKET,
            RateLimitStrategy.DISTRIBUTED_TOKEN_BUCKET,
        }

    def test_every_strategy_has_description(self):
        for strategy in RateLimitStrategy:
            assert strategy.description


class TestRateLimitType:
    def test_parse(self):
        assert RateLimitType.parse("IP") is RateLimitType.IP

    def test_parse_unknown(self):
        with pytest.raises(ConfigurationError):
            RateLimitType.parse("tenant")


class TestValidateIdentity:
    def test_valid(self):
        assert validate_identity("user-42") == "user-42"

    @pytest.mark.parametrize("identity", ["", None, 42, "two words", "tab\there", "line\nbreak", "x" * 513])
    def test_invalid(self, identity):
        with pytest.raises(InvalidArgumentError):
            validate_identity(identity)

    def test_max_length(self):
        assert validate_identity("x" * 512) == "x" * 512


class TestRateLimitKey:
    """Keys are deterministic and namespaced by type and strategy."""

    def test_global(self):
        key = RateLimitKey.build("rate_limit", RateLimitType.GLOBAL, RateLimitStrategy.FIXED_WINDOW, "login")

        assert key.value == "rate_limit:global:fixed_window:global:login"
        assert str(key) == key.value

    def test_ip_prefers_context(self):
        key = RateLimitKey.build(
            "rate_limit", RateLimitType.IP, RateLimitStrategy.SLIDING_WINDOW, "fallback", {"client_ip": "10.0.0.1"}
        )

        assert key.value == "rate_limit:ip:sliding_window:ip:10.0.0.1"

    def test_ip_falls_back_to_identity(self):
        key = RateLimitKey.build("rate_limit", RateLimitType.IP, RateLimitStrategy.SLIDING_WINDOW, "10.0.0.2")

        assert key.segment == "ip:10.0.0.2"

    def test_user(self):
        key = RateLimitKey.build(
            "rate_limit", RateLimitType.USER, RateLimitStrategy.TOKEN_BUCKET, "anon", {"user_id": "42"}
        )

        assert key.value == "rate_limit:user:token_bucket:user:42"

    def test_api_path_normalized(self):
        key = RateLimitKey.build(
            "rate_limit",
            RateLimitType.API,
            RateLimitStrategy.FIXED_WINDOW,
            "ignored",
            {"api_path": "/api/v1/songs/?page=2#top"},
        )

        assert key.value == "rate_limit:api:fixed_window:api:_api_v1_songs"

    def test_custom(self):
        key = RateLimitKey.build("edge", RateLimitType.CUSTOM, RateLimitStrategy.COUNTER, "export-job")

        assert key.value == "edge:custom:counter:custom:export-job"

    def test_deterministic(self):
        first = RateLimitKey.build("p", RateLimitType.USER, RateLimitStrategy.HOTSPOT, "a", {"user_id": "7"})
        second = RateLimitKey.build("p", RateLimitType.USER, RateLimitStrategy.HOTSPOT, "b", {"user_id": "7"})

        assert first == second
        assert hash(first) == hash(second)

    def test_distinct_identities_do_not_collide(self):
        keys = {
            RateLimitKey.build("p", RateLimitType.GLOBAL, RateLimitStrategy.COUNTER, identity).value
            for identity in ("a", "b", "a:b", "ab")
        }

        assert len(keys) == 4

    @pytest.mark.parametrize(
        "path,expected",
        [("/", "_"), ("/api/", "_api"), ("/api/v1/x?q=1", "_api_v1_x"), ("relative/path", "relative_path")],
    )
    def test_normalize_path(self, path, expected):
        assert RateLimitKey.normalize_path(path) == expected

    def test_namespace_patterns_escape_glob(self):
        patterns = RateLimitKey.namespace_patterns("rate_limit", "a*b")

        assert patterns == ("rate_limit:*:a\\*b", "rate_limit:*:a\\*b:*")

    @pytest.mark.parametrize(
        "key,identity",
        [
            ("rl:global:fixed_window:global:alice", "alice"),
            ("rl:global:fixed_window:global:alice:fixed_window:1700000400", "alice"),
            ("rl:custom:counter:custom:alice:reset_time", "alice"),
            ("rl:user:token_bucket:user:u1:token_bucket:created", "u1"),
            ("rl:ip:distributed_token_bucket:ip:10.0.0.1:distributed_bucket:weight:node-a", "10.0.0.1"),
            ("rl:api:hotspot:api:_api_v1_songs:param:sku-1:hotspot_window:9", "_api_v1_songs"),
            ("rl:custom:fixed_window:custom:custom:fixed_window:1700000400", "custom"),
        ],
    )
    def test_is_owned_by(self, key, identity):
        assert RateLimitKey.is_owned_by(key, "rl", identity)

    @pytest.mark.parametrize(
        "key,identity",
        [
            ("rl:custom:fixed_window:custom:alice:fixed_window:1700000400", "custom"),
            ("rl:custom:fixed_window:custom:alice:fixed_window:1700000400", "fixed_window"),
            ("rl:global:token_bucket:global:alice:token_bucket:tokens", "tokens"),
            ("rl:global:fixed_window:global:alice:fixed_window:1700000400", "1700000400"),
            ("rl:global:fixed_window:ip:alice", "alice"),
            ("rl:stats:hourly:2023-11-14-22:alice", "alice"),
            ("other:global:fixed_window:global:alice", "alice"),
        ],
    )
    def test_is_not_owned_by(self, key, identity):
        assert not RateLimitKey.is_owned_by(key, "rl", identity)

    def test_escape_glob(self):
        assert escape_glob("[x]?") == "\\[x\\]\\?"


class TestRateLimitRule:
    def test_valid(self):
        rule = RateLimitRule(limit=10, period=5, type=RateLimitType.GLOBAL, strategy=RateLimitStrategy.FIXED_WINDOW)

        assert rule.period_ms == 5000
        assert rule.nominal_rate == 2.0

    @pytest.mark.parametrize("limit,period", [(0, 1), (1, 0), (-5, 10), (True, 10), (1.5, 10)])
    def test_invalid(self, limit, period):
        with pytest.raises(ConfigurationError):
            RateLimitRule(limit=limit, period=period, type=RateLimitType.GLOBAL, strategy=RateLimitStrategy.COUNTER)


class TestParams:
    def test_token_bucket_requires_positive_values(self):
        with pytest.raises(ConfigurationError):
            TokenBucketParams(capacity=0, refill_rate=1.0)
        with pytest.raises(ConfigurationError):
            TokenBucketParams(capacity=10, refill_rate=1.0, warmup_period=-1)

    def test_sliding_window_slices(self):
        with pytest.raises(ConfigurationError):
            SlidingWindowParams(slices=0)

    def test_distributed_node_id(self):
        with pytest.raises(ConfigurationError):
            DistributedTokenBucketParams(capacity=10, refill_rate=1.0, node_id="a:b")
        with pytest.raises(ConfigurationError):
            DistributedTokenBucketParams(capacity=10, refill_rate=1.0, node_id="")

    def test_hotspot_params(self):
        params = HotspotParams(parameter="track-1", hotspot_limit=20, detection_threshold=50)

        assert params.detection_window == 300
        with pytest.raises(ConfigurationError):
            HotspotParams(parameter="x", hotspot_limit=0, detection_threshold=1)

    def test_params_are_immutable(self):
        params = SlidingWindowParams(slices=10)

        with pytest.raises(AttributeError):
            params.slices = 20
