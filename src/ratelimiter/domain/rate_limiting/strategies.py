"""
Strategy Registry

One handler per admission algorithm. A handler knows three things about its
algorithm and nothing else:

- how to fill strategy tunables the caller did not supply
- how to encode them as the script's ARGV (the wire contract)
- how to normalize the script's four element reply into a decision

The registry maps :class:`RateLimitStrategy` members to handlers and is
populated once; the orchestrator never branches on the strategy itself.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, Generic, List, Mapping, Optional, TypeVar

from ratelimiter.core.exceptions import ConfigurationError
from ratelimiter.core.rate_limiting.config import RateLimitingConfig
from ratelimiter.domain.rate_limiting.entities import RateLimitDecision
from ratelimiter.domain.rate_limiting.hotspot import HotspotDetector
from ratelimiter.domain.rate_limiting.repositories import RateLimitStore
from ratelimiter.domain.rate_limiting.value_objects import (
    CounterParams,
    DistributedTokenBucketParams,
    FixedWindowParams,
    HotspotParams,
    LeakyBucketParams,
    RateLimitRule,
    RateLimitStrategy,
    SlidingWindowParams,
    TokenBucketParams,
)

P = TypeVar("P")


class StrategyHandler(ABC, Generic[P]):
    """Base class for one admission algorithm."""

    strategy: ClassVar[RateLimitStrategy]
    params_type: ClassVar[type]

    @property
    def script_name(self) -> str:
        return self.strategy.value

    def coerce_params(
        self,
        rule: RateLimitRule,
        params: Any,
        context: Mapping[str, Any],
        config: RateLimitingConfig,
    ) -> P:
        """Accept a ready-made params object or a mapping of overrides."""
        if isinstance(params, self.params_type):
            return params
        if params is not None and not isinstance(params, Mapping):
            raise ConfigurationError(
                f"{self.strategy.name} expects {self.params_type.__name__} or a mapping, got {type(params).__name__}"
            )
        overrides = dict(params or {})
        try:
            return self.resolve_params(rule, overrides, context, config)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid {self.strategy.value} parameters: {e}") from e

    @abstractmethod
    def resolve_params(
        self,
        rule: RateLimitRule,
        overrides: Mapping[str, Any],
        context: Mapping[str, Any],
        config: RateLimitingConfig,
    ) -> P:
        """Fill tunables not supplied in ``overrides`` from configuration defaults."""

    @abstractmethod
    def build_args(self, rule: RateLimitRule, params: P, now_ms: int) -> List[Any]:
        """ARGV for the script, in wire order."""

    @abstractmethod
    def parse(self, raw: List[int], rule: RateLimitRule, params: P, key: str, now_ms: int) -> RateLimitDecision:
        """Normalize the script reply."""

    def limit_for(self, rule: RateLimitRule, params: P) -> int:
        """The limit reported when the store could not be consulted."""
        return rule.limit

    def evaluate(self, store: RateLimitStore, key: str, rule: RateLimitRule, params: P, now_ms: int) -> List[int]:
        return store.eval_script(self.script_name, key, self.build_args(rule, params, now_ms))

    async def aevaluate(self, store: RateLimitStore, key: str, rule: RateLimitRule, params: P, now_ms: int) -> List[int]:
        return await store.aeval_script(self.script_name, key, self.build_args(rule, params, now_ms))


class _WindowHandler(StrategyHandler[P]):
    """Shared parsing for replies shaped ``[allowed, remaining, reset_ms, current]``."""

    def parse(self, raw: List[int], rule: RateLimitRule, params: P, key: str, now_ms: int) -> RateLimitDecision:
        allowed, remaining, reset_at_ms, current = raw
        common = dict(
            key=key,
            strategy=self.strategy,
            limit=rule.limit,
            current=max(0, current),
            reset_at_ms=reset_at_ms,
            type=rule.type,
            checked_at_ms=now_ms,
        )
        if allowed == 1:
            return RateLimitDecision.allowed_result(remaining=min(rule.limit, max(0, remaining)), **common)
        return RateLimitDecision.denied_result(wait_ms=max(0, reset_at_ms - now_ms), **common)


class FixedWindowHandler(_WindowHandler[FixedWindowParams]):
    strategy = RateLimitStrategy.FIXED_WINDOW
    params_type = FixedWindowParams

    def resolve_params(self, rule, overrides, context, config) -> FixedWindowParams:
        return FixedWindowParams(requested=int(overrides.get("requested", 1)))

    def build_args(self, rule, params, now_ms) -> List[Any]:
        return [rule.period, rule.limit, now_ms, params.requested]


class CounterHandler(_WindowHandler[CounterParams]):
    strategy = RateLimitStrategy.COUNTER
    params_type = CounterParams

    def resolve_params(self, rule, overrides, context, config) -> CounterParams:
        return CounterParams(requested=int(overrides.get("requested", 1)))

    def build_args(self, rule, params, now_ms) -> List[Any]:
        return [rule.period, rule.limit, now_ms, params.requested]


class SlidingWindowHandler(_WindowHandler[SlidingWindowParams]):
    strategy = RateLimitStrategy.SLIDING_WINDOW
    params_type = SlidingWindowParams

    def resolve_params(self, rule, overrides, context, config) -> SlidingWindowParams:
        bounds = config.sliding_window
        slices = int(overrides.get("slices", bounds.default_slices))
        if not bounds.min_slices <= slices <= bounds.max_slices:
            raise ConfigurationError(
                f"slices must lie within [{bounds.min_slices}, {bounds.max_slices}], got {slices}"
            )
        return SlidingWindowParams(slices=slices)

    def build_args(self, rule, params, now_ms) -> List[Any]:
        return [rule.period, rule.limit, now_ms, params.slices]


class TokenBucketHandler(StrategyHandler[TokenBucketParams]):
    strategy = RateLimitStrategy.TOKEN_BUCKET
    params_type = TokenBucketParams

    def resolve_params(self, rule, overrides, context, config) -> TokenBucketParams:
        defaults = config.token_bucket
        capacity = int(overrides.get("capacity") or defaults.default_capacity or rule.limit)
        refill_rate = float(overrides.get("refill_rate") or defaults.default_refill_rate or rule.nominal_rate)
        if capacity > defaults.max_capacity:
            raise ConfigurationError(f"capacity {capacity} exceeds maximum {defaults.max_capacity}")
        if refill_rate > defaults.max_refill_rate:
            raise ConfigurationError(f"refill_rate {refill_rate} exceeds maximum {defaults.max_refill_rate}")
        return TokenBucketParams(
            capacity=capacity,
            refill_rate=refill_rate,
            warmup_period=int(overrides.get("warmup_period", defaults.default_warmup_period)),
            requested=int(overrides.get("requested", 1)),
        )

    def build_args(self, rule, params, now_ms) -> List[Any]:
        return [params.capacity, params.refill_rate, now_ms, params.requested, params.warmup_period]

    def limit_for(self, rule, params) -> int:
        return params.capacity

    def parse(self, raw, rule, params, key, now_ms) -> RateLimitDecision:
        allowed, tokens, next_refill_ms, wait_ms = raw
        remaining = min(params.capacity, max(0, tokens))
        common = dict(
            key=key,
            strategy=self.strategy,
            limit=params.capacity,
            current=params.capacity - remaining,
            reset_at_ms=next_refill_ms,
            type=rule.type,
            checked_at_ms=now_ms,
        )
        if allowed == 1:
            return RateLimitDecision.allowed_result(remaining=remaining, **common)
        return RateLimitDecision.denied_result(remaining=remaining, wait_ms=max(0, wait_ms), **common)


class LeakyBucketHandler(StrategyHandler[LeakyBucketParams]):
    strategy = RateLimitStrategy.LEAKY_BUCKET
    params_type = LeakyBucketParams

    def resolve_params(self, rule, overrides, context, config) -> LeakyBucketParams:
        defaults = config.leaky_bucket
        capacity = int(overrides.get("capacity") or defaults.default_capacity or rule.limit)
        leak_rate = float(overrides.get("leak_rate") or defaults.default_leak_rate or rule.nominal_rate)
        if capacity > defaults.max_capacity:
            raise ConfigurationError(f"capacity {capacity} exceeds maximum {defaults.max_capacity}")
        if leak_rate > defaults.max_leak_rate:
            raise ConfigurationError(f"leak_rate {leak_rate} exceeds maximum {defaults.max_leak_rate}")
        return LeakyBucketParams(capacity=capacity, leak_rate=leak_rate, requested=int(overrides.get("requested", 1)))

    def build_args(self, rule, params, now_ms) -> List[Any]:
        return [params.capacity, params.leak_rate, now_ms, params.requested]

    def limit_for(self, rule, params) -> int:
        return params.capacity

    def parse(self, raw, rule, params, key, now_ms) -> RateLimitDecision:
        allowed, volume, next_leak_ms, wait_ms = raw
        volume = min(params.capacity, max(0, volume))
        common = dict(
            key=key,
            strategy=self.strategy,
            limit=params.capacity,
            remaining=params.capacity - volume,
            current=volume,
            reset_at_ms=next_leak_ms,
            type=rule.type,
            checked_at_ms=now_ms,
        )
        if allowed == 1:
            return RateLimitDecision.allowed_result(**common)
        return RateLimitDecision.denied_result(wait_ms=max(0, wait_ms), **common)


class DistributedTokenBucketHandler(StrategyHandler[DistributedTokenBucketParams]):
    strategy = RateLimitStrategy.DISTRIBUTED_TOKEN_BUCKET
    params_type = DistributedTokenBucketParams

    def resolve_params(self, rule, overrides, context, config) -> DistributedTokenBucketParams:
        capacity = int(overrides.get("capacity") or config.token_bucket.default_capacity or rule.limit)
        refill_rate = float(
            overrides.get("refill_rate") or config.token_bucket.default_refill_rate or rule.nominal_rate
        )
        weight = float(overrides.get("weight") or config.distributed.default_weight)
        if weight > config.distributed.max_weight:
            raise ConfigurationError(f"weight {weight} exceeds maximum {config.distributed.max_weight}")
        if capacity > config.token_bucket.max_capacity:
            raise ConfigurationError(f"capacity {capacity} exceeds maximum {config.token_bucket.max_capacity}")
        return DistributedTokenBucketParams(
            capacity=capacity,
            refill_rate=refill_rate,
            node_id=str(overrides.get("node_id") or context.get("node_id") or config.node_id),
            weight=weight,
            requested=int(overrides.get("requested", 1)),
        )

    def build_args(self, rule, params, now_ms) -> List[Any]:
        return [params.capacity, params.refill_rate, now_ms, params.node_id, params.requested, params.weight]

    def limit_for(self, rule, params) -> int:
        return params.capacity

    def parse(self, raw, rule, params, key, now_ms) -> RateLimitDecision:
        # Reply order is [allowed, node_tokens, global_tokens, next_sync_ms].
        allowed, node_tokens, global_tokens, next_sync_ms = raw
        remaining = min(params.capacity, max(0, global_tokens))
        common = dict(
            key=key,
            strategy=self.strategy,
            limit=params.capacity,
            remaining=remaining,
            current=params.capacity - remaining,
            reset_at_ms=next_sync_ms,
            type=rule.type,
            checked_at_ms=now_ms,
            metadata={"node_id": params.node_id, "node_tokens": max(0, node_tokens)},
        )
        if allowed == 1:
            return RateLimitDecision.allowed_result(**common)
        return RateLimitDecision.denied_result(wait_ms=max(0, next_sync_ms - now_ms), **common)


class HotspotHandler(StrategyHandler[HotspotParams]):
    strategy = RateLimitStrategy.HOTSPOT
    params_type = HotspotParams

    def __init__(self, detector: Optional[HotspotDetector] = None):
        self.detector = detector or HotspotDetector()

    def resolve_params(self, rule, overrides, context, config) -> HotspotParams:
        return self.detector.resolve_params(rule, overrides, context, config.hotspot)

    def build_args(self, rule, params, now_ms) -> List[Any]:
        return self.detector.build_args(rule, params, now_ms)

    def parse(self, raw, rule, params, key, now_ms) -> RateLimitDecision:
        return self.detector.parse(raw, rule, params, key, now_ms)


class StrategyRegistry:
    """Maps strategies to their handlers."""

    def __init__(self, handlers: Optional[List[StrategyHandler]] = None):
        self._handlers: Dict[RateLimitStrategy, StrategyHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: StrategyHandler) -> None:
        self._handlers[handler.strategy] = handler

    def get(self, strategy: RateLimitStrategy) -> StrategyHandler:
        try:
            return self._handlers[strategy]
        except KeyError:
            raise ConfigurationError(f"No handler registered for strategy {strategy.value}") from None

    def __contains__(self, strategy: RateLimitStrategy) -> bool:
        return strategy in self._handlers

    @property
    def strategies(self) -> List[RateLimitStrategy]:
        return list(self._handlers)


def default_registry(detector: Optional[HotspotDetector] = None) -> StrategyRegistry:
    return StrategyRegistry(
        [
            FixedWindowHandler(),
            CounterHandler(),
            SlidingWindowHandler(),
            TokenBucketHandler(),
            LeakyBucketHandler(),
            DistributedTokenBucketHandler(),
            HotspotHandler(detector),
        ]
    )
