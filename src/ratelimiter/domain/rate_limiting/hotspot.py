"""
Hotspot Detection

Distinguishes "this key is busy" from "one parameter value behind this key is
anomalously busy" (for example one track id attracting most of the traffic
of a shared endpoint) and tightens the limit for that value only.

State machine per parameter value::

    NORMAL -> DETECTED -> TRACKED -> EXPIRED -> DETECTED ...

- DETECTED: the value reached ``detection_threshold`` accesses inside the
  current detection window and is promoted to the hot list
- TRACKED: the value is on the hot list and is re-scored on every access
- EXPIRED: the value was not seen for longer than the detection window; it
  is removed on its next access, or earlier by the probabilistic pruning
  inside the script

The counting itself happens atomically inside the hotspot script. This
module resolves its parameters, interprets its result and offers read-only
introspection plus a maintenance trim.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any, List, Mapping

from ratelimiter.core.exceptions import ConfigurationError
from ratelimiter.core.rate_limiting.config import HotspotConfig
from ratelimiter.domain.rate_limiting.entities import HotspotEntry, RateLimitDecision
from ratelimiter.domain.rate_limiting.repositories import RateLimitStore
from ratelimiter.domain.rate_limiting.value_objects import (
    HotspotParams,
    RateLimitRule,
    RateLimitStrategy,
)

MAX_HOTSPOT_LEVEL = 3


class HotspotState(Enum):
    NORMAL = "normal"
    DETECTED = "detected"
    TRACKED = "tracked"
    EXPIRED = "expired"


def hotspot_level(count: int, threshold: int) -> int:
    """Monotonic in ``count``, clamped to ``[0, 3]``."""
    if threshold <= 0:
        raise ValueError("threshold must be positive")
    return min(MAX_HOTSPOT_LEVEL, max(0, count) // threshold)


def effective_hotspot_limit(hotspot_limit: int, level: int) -> int:
    """Stricter limit for a hot value: ``hotspot_limit / (level + 1)``, at least 1."""
    return max(1, hotspot_limit // (level + 1))


def hot_list_key(base_key: str) -> str:
    return f"{base_key}:hotspot_list"


def hot_touch_key(base_key: str) -> str:
    return f"{base_key}:hotspot_touch"


def detection_key(base_key: str, now_ms: int, detection_window: int) -> str:
    return f"{base_key}:detection:{(now_ms // 1000) // detection_window}"


class HotspotDetector:
    """Parameter resolution, result parsing and introspection for the hotspot strategy."""

    def resolve_params(
        self,
        rule: RateLimitRule,
        overrides: Mapping[str, Any],
        context: Mapping[str, Any],
        config: HotspotConfig,
    ) -> HotspotParams:
        """Fill hotspot tunables: explicit value, then configuration, then values derived from the rule.

        The parameter value defaults to ``context["hotspot_param"]`` and then
        ``context["user_id"]``.
        """
        if not config.enabled:
            raise ConfigurationError("Hotspot limiting is disabled by configuration")

        parameter = overrides.get("parameter")
        if parameter is None:
            parameter = context.get("hotspot_param") or context.get("user_id") or ""

        hotspot_limit = overrides.get("hotspot_limit") or config.hotspot_limit or max(1, rule.limit // 5)
        threshold = overrides.get("detection_threshold") or config.detection_threshold or rule.limit * 2
        window = overrides.get("detection_window") or config.detection_window

        return HotspotParams(
            parameter=str(parameter),
            hotspot_limit=int(hotspot_limit),
            detection_threshold=int(threshold),
            detection_window=int(window),
        )

    def build_args(self, rule: RateLimitRule, params: HotspotParams, now_ms: int) -> List[Any]:
        return [
            params.parameter,
            rule.limit,
            params.hotspot_limit,
            rule.period,
            now_ms,
            params.detection_threshold,
            params.detection_window,
        ]

    def parse(
        self,
        raw: List[int],
        rule: RateLimitRule,
        params: HotspotParams,
        key: str,
        now_ms: int,
    ) -> RateLimitDecision:
        allowed, is_hot, remaining, level = raw
        is_hotspot = is_hot == 1
        level = min(MAX_HOTSPOT_LEVEL, max(0, level)) if is_hotspot else 0
        limit = effective_hotspot_limit(params.hotspot_limit, level) if is_hotspot else rule.limit
        remaining = min(limit, max(0, remaining))

        window_id = (now_ms // 1000) // rule.period
        reset_at_ms = (window_id + 1) * rule.period * 1000

        common = dict(
            key=key,
            strategy=RateLimitStrategy.HOTSPOT,
            limit=limit,
            reset_at_ms=reset_at_ms,
            hotspot_level=level,
            type=rule.type,
            checked_at_ms=now_ms,
            metadata={"hotspot_param": params.parameter},
        )
        if allowed == 1:
            return RateLimitDecision.allowed_result(
                remaining=remaining,
                current=limit - remaining,
                is_hotspot=is_hotspot,
                **common,
            )
        return RateLimitDecision.denied_result(
            is_hotspot=is_hotspot,
            current=limit,
            wait_ms=max(0, reset_at_ms - now_ms),
            **common,
        )

    def hot_parameters(self, store: RateLimitStore, base_key: str, now_ms: int, detection_window: int) -> List[HotspotEntry]:
        """Values currently tracked as hot, hottest first. Expired entries are skipped."""
        touches = dict(store.read_sorted_set(hot_touch_key(base_key)))
        now_s = now_ms // 1000
        entries = []
        for parameter, score in store.read_sorted_set(hot_list_key(base_key)):
            last_seen = touches.get(parameter)
            if last_seen is None or now_s - last_seen > detection_window:
                continue
            entries.append(HotspotEntry(parameter=parameter, score=int(score), last_seen_ms=int(last_seen) * 1000))
        return entries

    def state(self, store: RateLimitStore, base_key: str, parameter: str, now_ms: int, params: HotspotParams) -> HotspotState:
        """Where ``parameter`` currently sits in the hotspot state machine."""
        tracked = dict(store.read_sorted_set(hot_list_key(base_key)))
        if parameter in tracked:
            last_seen = dict(store.read_sorted_set(hot_touch_key(base_key))).get(parameter)
            if last_seen is not None and now_ms // 1000 - last_seen <= params.detection_window:
                return HotspotState.TRACKED
            return HotspotState.EXPIRED

        counts = store.read_hash(detection_key(base_key, now_ms, params.detection_window))
        if int(counts.get(parameter, 0)) >= params.detection_threshold:
            return HotspotState.DETECTED
        return HotspotState.NORMAL

    def trim(self, store: RateLimitStore, base_key: str, now_ms: int, config: HotspotConfig) -> int:
        """
        Drop stale values and keep at most ``max_hotspots`` hottest ones.

        A value is stale when its last access predates the detection window.
        Dropped values leave both the hot list and the touch set. Expiry of
        both is refreshed. Returns the number of values dropped.
        """
        list_key = hot_list_key(base_key)
        touch_key = hot_touch_key(base_key)
        cutoff = math.floor(now_ms / 1000) - config.detection_window

        pipe = store.pipeline()
        pipe.zrangebyscore(touch_key, "-inf", f"({cutoff}")
        pipe.zrange(list_key, 0, -(config.max_hotspots + 1))
        stale, overflow = store.execute_pipeline(pipe)
        dropped = sorted(set(stale) | set(overflow))

        pipe = store.pipeline()
        if dropped:
            pipe.zrem(list_key, *dropped)
            pipe.zrem(touch_key, *dropped)
        pipe.expire(list_key, config.expire_time)
        pipe.expire(touch_key, config.expire_time)
        store.execute_pipeline(pipe)
        return len(dropped)
