"""
Rate Limiting Service

The orchestrator every caller goes through. A check runs in a fixed order:

1. Validate the identity and the context (no store call on bad input)
2. Resolve the rule: explicit argument, route/role override, per-type
   configuration, global defaults
3. Short-circuit bypassed (disabled, whitelisted) and blacklisted requests
4. Build the namespaced key and fill the strategy tunables
5. Run the strategy script; a store failure becomes a degraded decision
   according to ``fail_open``
6. Log, count and hand the decision to the monitor behind an error boundary

The service keeps no counters of its own. The only in-process state is the
bounded set of keys this process has checked, exposed through
:meth:`active_keys`.
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union

from ratelimiter.core.exceptions import InvalidArgumentError, StoreUnavailableError
from ratelimiter.core.logging import logger
from ratelimiter.core.metrics import metrics_collector
from ratelimiter.core.rate_limiting import config as config_module
from ratelimiter.core.rate_limiting.config import RateLimitingConfig
from ratelimiter.domain.rate_limiting.entities import (
    BLACKLISTED_CODE,
    BLACKLISTED_MESSAGE,
    BatchCheck,
    HotspotEntry,
    RateLimitDecision,
    RateLimitEvent,
)
from ratelimiter.domain.rate_limiting.monitor import RateLimitMonitor
from ratelimiter.domain.rate_limiting.repositories import RateLimitStore
from ratelimiter.domain.rate_limiting.strategies import (
    HotspotHandler,
    StrategyHandler,
    StrategyRegistry,
    default_registry,
)
from ratelimiter.domain.rate_limiting.value_objects import (
    RateLimitKey,
    RateLimitRule,
    RateLimitStrategy,
    RateLimitType,
    validate_identity,
)

WARMUP_MIN_TTL = 3600


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _PreparedCheck:
    """Everything needed to run one strategy script."""

    key: str
    rule: RateLimitRule
    handler: StrategyHandler
    params: Any
    now_ms: int
    client_ip: Optional[str]


class RateLimitService:
    """
    Admission controller coordinating many stateless instances through one store.

    Args:
        store: Store adapter running the strategy scripts
        config: Limiting policy; defaults to the module-level configuration
        registry: Strategy handlers; defaults to every built-in strategy
        monitor: Statistics and alerting sink; built from ``store`` when omitted
        clock: Returns the current epoch time in milliseconds
    """

    def __init__(
        self,
        store: RateLimitStore,
        config: Optional[RateLimitingConfig] = None,
        registry: Optional[StrategyRegistry] = None,
        monitor: Optional[RateLimitMonitor] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.store = store
        self.config = config or config_module.rate_limiting_config
        self.registry = registry or default_registry()
        self.monitor = monitor or RateLimitMonitor(store, key_prefix=self.config.key_prefix)
        self._clock = clock or _now_ms
        self._active_keys: OrderedDict[str, None] = OrderedDict()
        self._active_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Admission checks
    # ------------------------------------------------------------------

    def check(
        self,
        identity: str,
        strategy: Union[RateLimitStrategy, str, None] = None,
        type: Union[RateLimitType, str, None] = None,
        limit: Optional[int] = None,
        period: Optional[int] = None,
        context: Optional[Mapping[str, Any]] = None,
        params: Any = None,
    ) -> RateLimitDecision:
        """
        Decide whether one request for ``identity`` may proceed.

        Args:
            identity: Caller-supplied resource identity
            strategy: Admission algorithm; defaults per type configuration
            type: Limiting dimension; defaults to ``default_type``
            limit: Requests allowed per period
            period: Period length in seconds
            context: Caller attributes (client_ip, user_id, user_role,
                api_path, node_id, hotspot_param)
            params: Strategy tunables, a params object or a mapping

        Returns:
            RateLimitDecision: Never raises on store failure

        Raises:
            InvalidArgumentError: Malformed identity or context
            ConfigurationError: Unknown strategy/type or invalid tunables
        """
        prepared = self._prepare(identity, strategy, type, limit, period, context, params)
        if isinstance(prepared, RateLimitDecision):
            return prepared

        try:
            raw = prepared.handler.evaluate(
                self.store, prepared.key, prepared.rule, prepared.params, prepared.now_ms
            )
        except StoreUnavailableError as e:
            decision = self._degraded(prepared, e)
        else:
            decision = prepared.handler.parse(raw, prepared.rule, prepared.params, prepared.key, prepared.now_ms)

        self._after_decision(decision)
        if self._should_monitor(decision):
            try:
                self.monitor.record(self._event(decision, prepared), at=self._moment(prepared.now_ms))
            except Exception as e:
                logger.warning("Rate limit monitor failed", key=decision.key, error=str(e))
        return decision

    async def check_async(
        self,
        identity: str,
        strategy: Union[RateLimitStrategy, str, None] = None,
        type: Union[RateLimitType, str, None] = None,
        limit: Optional[int] = None,
        period: Optional[int] = None,
        context: Optional[Mapping[str, Any]] = None,
        params: Any = None,
    ) -> RateLimitDecision:
        """Async counterpart of :meth:`check`.

        Uses the store's asyncio client when it has one; otherwise the
        blocking check runs in a worker thread.
        """
        if not self.store.supports_async:
            return await asyncio.to_thread(
                self.check, identity, strategy, type, limit, period, context, params
            )

        prepared = self._prepare(identity, strategy, type, limit, period, context, params)
        if isinstance(prepared, RateLimitDecision):
            return prepared

        try:
            raw = await prepared.handler.aevaluate(
                self.store, prepared.key, prepared.rule, prepared.params, prepared.now_ms
            )
        except StoreUnavailableError as e:
            decision = self._degraded(prepared, e)
        else:
            decision = prepared.handler.parse(raw, prepared.rule, prepared.params, prepared.key, prepared.now_ms)

        self._after_decision(decision)
        if self._should_monitor(decision):
            try:
                await self.monitor.arecord(self._event(decision, prepared), at=self._moment(prepared.now_ms))
            except Exception as e:
                logger.warning("Rate limit monitor failed", key=decision.key, error=str(e))
        return decision

    def check_batch(self, checks: Mapping[str, BatchCheck]) -> Dict[str, RateLimitDecision]:
        """Run several independent checks one after another. No cross-entry atomicity."""
        return {label: self.check(**self._batch_kwargs(item)) for label, item in checks.items()}

    async def check_batch_async(self, checks: Mapping[str, BatchCheck]) -> Dict[str, RateLimitDecision]:
        """Run several independent checks concurrently."""
        labels = list(checks)
        decisions = await asyncio.gather(
            *(self.check_async(**self._batch_kwargs(checks[label])) for label in labels)
        )
        return dict(zip(labels, decisions))

    @staticmethod
    def _batch_kwargs(item: BatchCheck) -> Dict[str, Any]:
        if not isinstance(item, BatchCheck):
            raise InvalidArgumentError(f"Batch entries must be BatchCheck instances, got {type(item).__name__}")
        return dict(
            identity=item.identity,
            strategy=item.strategy,
            type=item.type,
            limit=item.limit,
            period=item.period,
            context=item.context,
            params=item.params,
        )

    def _prepare(
        self,
        identity: Any,
        strategy: Union[RateLimitStrategy, str, None],
        type: Union[RateLimitType, str, None],
        limit: Optional[int],
        period: Optional[int],
        context: Optional[Mapping[str, Any]],
        params: Any,
    ) -> Union[RateLimitDecision, _PreparedCheck]:
        identity = validate_identity(identity)
        context = self._validate_context(context)
        config = self.config

        limit_type = RateLimitType.parse(type) if type is not None else config.default_type
        requested_strategy = RateLimitStrategy.parse(strategy) if strategy is not None else None
        rule = config.resolve_rule(limit_type, context, requested_strategy, limit, period)
        handler = self.registry.get(rule.strategy)
        key = RateLimitKey.build(config.key_prefix, rule.type, rule.strategy, identity, context).value
        now_ms = self._clock()

        bypass_reason = config.get_bypass_reason(rule.type, context)
        if bypass_reason:
            if config.enable_log:
                logger.debug("Rate limit bypassed", key=key, reason=bypass_reason)
            return RateLimitDecision.bypass_result(
                key=key, strategy=rule.strategy, limit=rule.limit, reason=bypass_reason, type=rule.type, now_ms=now_ms
            )

        client_ip = context.get("client_ip")
        if config.is_blacklisted(client_ip):
            decision = RateLimitDecision.denied_result(
                key=key,
                strategy=rule.strategy,
                limit=rule.limit,
                type=rule.type,
                error_code=BLACKLISTED_CODE,
                message=BLACKLISTED_MESSAGE,
                checked_at_ms=now_ms,
            )
            logger.warning("Blacklisted client rejected", key=key, client_ip=client_ip)
            metrics_collector.record_decision_metric(rule.strategy.value, allowed=False)
            return decision

        resolved = handler.coerce_params(rule, params, context, config)
        return _PreparedCheck(
            key=key,
            rule=rule,
            handler=handler,
            params=resolved,
            now_ms=now_ms,
            client_ip=client_ip,
        )

    @staticmethod
    def _validate_context(context: Any) -> Dict[str, Any]:
        if context is None:
            return {}
        if not isinstance(context, Mapping):
            raise InvalidArgumentError(f"Context must be a mapping, got {type(context).__name__}")
        return dict(context)

    def _degraded(self, prepared: _PreparedCheck, error: StoreUnavailableError) -> RateLimitDecision:
        logger.error(
            "Rate limit store unavailable",
            key=prepared.key,
            strategy=prepared.rule.strategy.value,
            fail_open=self.config.fail_open,
            error=str(error),
        )
        return RateLimitDecision.fallback_result(
            key=prepared.key,
            strategy=prepared.rule.strategy,
            limit=prepared.handler.limit_for(prepared.rule, prepared.params),
            period=prepared.rule.period,
            fail_open=self.config.fail_open,
            reason=error.message,
            now_ms=prepared.now_ms,
            type=prepared.rule.type,
        )

    def _after_decision(self, decision: RateLimitDecision) -> None:
        with self._active_lock:
            self._active_keys[decision.key] = None
            self._active_keys.move_to_end(decision.key)
            while len(self._active_keys) > self.config.max_active_keys:
                self._active_keys.popitem(last=False)

        metrics_collector.record_decision_metric(
            decision.strategy.value,
            allowed=decision.allowed,
            hotspot=decision.is_hotspot,
            degraded=decision.degraded,
        )

        if not self.config.enable_log:
            return
        if decision.allowed:
            logger.debug(
                "Rate limit check passed",
                key=decision.key,
                strategy=decision.strategy.value,
                remaining=decision.remaining,
                limit=decision.limit,
                degraded=decision.degraded,
            )
        else:
            logger.warning(
                "Rate limit exceeded",
                key=decision.key,
                strategy=decision.strategy.value,
                limit=decision.limit,
                is_hotspot=decision.is_hotspot,
                hotspot_level=decision.hotspot_level,
                retry_after=decision.retry_after,
                degraded=decision.degraded,
            )

    def _should_monitor(self, decision: RateLimitDecision) -> bool:
        return self.config.enable_monitor and not decision.degraded and self.monitor is not None

    @staticmethod
    def _event(decision: RateLimitDecision, prepared: _PreparedCheck) -> RateLimitEvent:
        return RateLimitEvent.from_decision(decision, client_ip=prepared.client_ip)

    @staticmethod
    def _moment(now_ms: int) -> datetime:
        return datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)

    # ------------------------------------------------------------------
    # Key namespace management
    # ------------------------------------------------------------------

    def _related_keys(self, identity: str) -> List[str]:
        found: Set[str] = set()
        for pattern in RateLimitKey.namespace_patterns(self.config.key_prefix, identity):
            found.update(self.store.scan_keys(pattern))
        return sorted(key for key in found if self._owns(key, identity))

    def _owns(self, key: str, identity: str) -> bool:
        return RateLimitKey.is_owned_by(key, self.config.key_prefix, identity)

    def reset(self, identity: str) -> bool:
        """
        Delete every key owned by ``identity`` under the configured prefix.

        Returns whether any state existed. Resetting again is harmless and
        returns False, as does a reset the store could not serve.
        """
        identity = validate_identity(identity)
        try:
            keys = self._related_keys(identity)
            deleted = self.store.delete(*keys)
        except StoreUnavailableError as e:
            logger.error("Rate limit reset failed", identity=identity, error=str(e))
            return False

        with self._active_lock:
            for key in [key for key in self._active_keys if self._owns(key, identity)]:
                del self._active_keys[key]
        logger.info("Rate limit reset", identity=identity, deleted=deleted)
        return deleted > 0

    def delete(self, identity: str) -> bool:
        """Alias of :meth:`reset`."""
        return self.reset(identity)

    def exists(self, identity: str) -> bool:
        identity = validate_identity(identity)
        try:
            return bool(self._related_keys(identity))
        except StoreUnavailableError as e:
            logger.error("Rate limit lookup failed", identity=identity, error=str(e))
            return False

    def statistics(self, identity: str) -> Dict[str, Any]:
        """Keys owned by ``identity`` with their remaining TTLs."""
        identity = validate_identity(identity)
        patterns = RateLimitKey.namespace_patterns(self.config.key_prefix, identity)
        stats: Dict[str, Any] = {
            "identity": identity,
            "pattern": patterns[0],
            "related_keys": 0,
            "keys": {},
            "timestamp": self._clock(),
        }
        try:
            keys = self._related_keys(identity)
            stats["keys"] = {key: self.store.ttl(key) for key in keys}
        except StoreUnavailableError as e:
            logger.error("Rate limit statistics failed", identity=identity, error=str(e))
            stats["error"] = str(e)
            return stats
        stats["related_keys"] = len(keys)
        return stats

    def active_keys(self) -> List[str]:
        """
        Keys this process has checked since start or their last reset.

        Only the ``max_active_keys`` most recently checked keys are kept.
        """
        with self._active_lock:
            return sorted(self._active_keys)

    # ------------------------------------------------------------------
    # Warmup
    # ------------------------------------------------------------------

    def warmup(
        self,
        identity: str,
        strategy: Union[RateLimitStrategy, str],
        params: Optional[Mapping[str, Any]] = None,
        type: Union[RateLimitType, str, None] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Pre-seed a bucket so the first requests find tokens.

        ``params["tokens"]`` (default: capacity) is capped at capacity. Only
        the token bucket and the distributed token bucket can be warmed up;
        any other strategy, or a store failure, returns False.
        """
        identity = validate_identity(identity)
        context = self._validate_context(context)
        strategy = RateLimitStrategy.parse(strategy)
        if not strategy.supports_warmup:
            logger.info("Warmup not supported for strategy", strategy=strategy.value)
            return False

        params = dict(params or {})
        requested_tokens = params.pop("tokens", None)
        limit_type = RateLimitType.parse(type) if type is not None else self.config.default_type
        rule = self.config.resolve_rule(limit_type, context, strategy)
        handler = self.registry.get(strategy)
        resolved = handler.coerce_params(rule, params, context, self.config)

        capacity = resolved.capacity
        tokens = capacity if requested_tokens is None else max(0, min(capacity, int(requested_tokens)))
        key = RateLimitKey.build(self.config.key_prefix, rule.type, strategy, identity, context).value
        now_s = self._clock() / 1000
        ttl = math.ceil(max(WARMUP_MIN_TTL, capacity / resolved.refill_rate * 2))

        if strategy is RateLimitStrategy.TOKEN_BUCKET:
            base = f"{key}:token_bucket"
            values = {f"{base}:tokens": tokens, f"{base}:last_refill": now_s, f"{base}:created": now_s}
            absent = [f"{base}:created"]
        else:
            base = f"{key}:distributed_bucket"
            values = {f"{base}:global_tokens": tokens, f"{base}:last_refill": now_s}
            absent = []

        try:
            self.store.set_values(values, ttl=ttl, only_if_absent=absent)
        except StoreUnavailableError as e:
            logger.error("Rate limit warmup failed", key=key, error=str(e))
            return False

        logger.info("Rate limit bucket warmed up", key=key, tokens=tokens, capacity=capacity)
        return True

    # ------------------------------------------------------------------
    # Hotspots
    # ------------------------------------------------------------------

    def _hotspot_handler(self) -> HotspotHandler:
        return self.registry.get(RateLimitStrategy.HOTSPOT)

    def hotspot_key(
        self,
        identity: str,
        type: Union[RateLimitType, str, None] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Base key the hotspot strategy uses for ``identity``."""
        identity = validate_identity(identity)
        limit_type = RateLimitType.parse(type) if type is not None else self.config.default_type
        return RateLimitKey.build(
            self.config.key_prefix, limit_type, RateLimitStrategy.HOTSPOT, identity, self._validate_context(context)
        ).value

    def hot_parameters(
        self,
        identity: str,
        type: Union[RateLimitType, str, None] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> List[HotspotEntry]:
        """Parameters currently tracked as hot for ``identity``, hottest first."""
        key = self.hotspot_key(identity, type, context)
        return self._hotspot_handler().detector.hot_parameters(
            self.store, key, self._clock(), self.config.hotspot.detection_window
        )

    def maintain_hotspots(
        self,
        identity: str,
        type: Union[RateLimitType, str, None] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Cap the hot list at ``max_hotspots`` and drop stale entries. Returns removed entries."""
        key = self.hotspot_key(identity, type, context)
        try:
            return self._hotspot_handler().detector.trim(self.store, key, self._clock(), self.config.hotspot)
        except StoreUnavailableError as e:
            logger.error("Hotspot maintenance failed", key=key, error=str(e))
            return 0

    # ------------------------------------------------------------------
    # Configuration and health
    # ------------------------------------------------------------------

    def update_config(self, config: RateLimitingConfig) -> None:
        """Swap the limiting policy; checks started afterwards use it."""
        config.validate_config()
        self.config = config
        self.monitor.key_prefix = config.key_prefix
        logger.info(
            "Rate limiting configuration updated",
            enabled=config.enabled,
            default_strategy=config.default_strategy.value,
            fail_open=config.fail_open,
        )

    def health_check(self) -> Dict[str, Any]:
        store = self.store.health_check()
        return {
            "status": "healthy" if store.get("healthy") else "degraded",
            "enabled": self.config.enabled,
            "fail_open": self.config.fail_open,
            "store": store,
            "strategies": [strategy.value for strategy in self.registry.strategies],
            "active_keys": len(self._active_keys),
        }
