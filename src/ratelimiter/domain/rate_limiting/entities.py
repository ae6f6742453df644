"""
Rate Limiting Domain Entities

Entities produced and consumed by the orchestrator and the monitor.

Entities:
- RateLimitDecision: Outcome of one admission check
- BatchCheck: One member of a batch request
- RateLimitEvent: What the monitor records for every decision
- RateLimitStatistics: Aggregated counters for one hour or day
- HotspotEntry: One tracked hot parameter
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ratelimiter.domain.rate_limiting.value_objects import (
    RateLimitStrategy,
    RateLimitType,
)

RATE_LIMITED_CODE = 429
BLACKLISTED_CODE = 403
STORE_FAILURE_CODE = 503

RATE_LIMITED_MESSAGE = "Rate limit exceeded, please retry later"
HOTSPOT_LIMITED_MESSAGE = "Hot parameter rate limit exceeded, please retry later"
BLACKLISTED_MESSAGE = "Client address is blocked"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitDecision:
    """Entity representing the result of one admission check.

    Contains everything a caller needs to admit or reject a request and to
    compute a client backoff: remaining quota, the effective limit, the reset
    instant and, for bucket strategies, the wait time.

    Invariants:
    - ``0 <= remaining <= limit``
    - ``hotspot_level > 0`` implies ``is_hotspot``
    """

    allowed: bool
    remaining: int
    limit: int
    strategy: RateLimitStrategy
    key: str

    current: int = 0
    reset_at_ms: int = 0
    wait_ms: int = 0
    is_hotspot: bool = False
    hotspot_level: int = 0
    type: Optional[RateLimitType] = None

    error_code: Optional[int] = None
    message: Optional[str] = None
    degraded: bool = False
    checked_at_ms: int = field(default_factory=_now_ms)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.limit < 0:
            raise ValueError("limit must not be negative")
        if not 0 <= self.remaining <= self.limit:
            raise ValueError(f"remaining {self.remaining} outside [0, {self.limit}]")
        if not 0 <= self.hotspot_level <= 3:
            raise ValueError("hotspot_level must be within [0, 3]")
        if self.hotspot_level > 0 and not self.is_hotspot:
            raise ValueError("hotspot_level > 0 requires is_hotspot")

    @property
    def is_blocked(self) -> bool:
        return not self.allowed

    @property
    def strategy_name(self) -> str:
        return self.strategy.value

    @property
    def remaining_percentage(self) -> float:
        if self.limit == 0:
            return 0.0
        return self.remaining / self.limit * 100

    @property
    def usage_percentage(self) -> float:
        return 100.0 - self.remaining_percentage

    @property
    def is_near_limit(self) -> bool:
        """Less than 20% of the quota left."""
        return self.remaining < self.limit * 0.2

    @property
    def needs_wait(self) -> bool:
        return not self.allowed and self.wait_ms > 0

    def seconds_until_reset(self, now_ms: Optional[int] = None) -> int:
        now_ms = _now_ms() if now_ms is None else now_ms
        return max(0, math.ceil((self.reset_at_ms - now_ms) / 1000))

    @property
    def retry_after(self) -> Optional[int]:
        """Seconds to wait before retrying, only for denials."""
        if self.allowed:
            return None
        if self.wait_ms > 0:
            return max(1, math.ceil(self.wait_ms / 1000))
        return max(1, self.seconds_until_reset(self.checked_at_ms))

    def to_http_headers(self) -> Dict[str, str]:
        """Convert the decision to conventional rate limit header values.

        - X-RateLimit-Limit: The effective limit for this check
        - X-RateLimit-Remaining: Requests left
        - X-RateLimit-Reset: Unix time when the quota resets
        - Retry-After: Seconds to wait (only when blocked)
        """
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Policy": self.strategy.value,
        }
        if self.reset_at_ms:
            headers["X-RateLimit-Reset"] = str(self.reset_at_ms // 1000)
        if self.is_blocked:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "current": self.current,
            "reset_at_ms": self.reset_at_ms,
            "wait_ms": self.wait_ms,
            "is_hotspot": self.is_hotspot,
            "hotspot_level": self.hotspot_level,
            "strategy": self.strategy.value,
            "type": self.type.value if self.type else None,
            "key": self.key,
            "error_code": self.error_code,
            "message": self.message,
            "degraded": self.degraded,
        }

    @classmethod
    def allowed_result(
        cls,
        key: str,
        strategy: RateLimitStrategy,
        remaining: int,
        limit: int,
        **kwargs,
    ) -> RateLimitDecision:
        """Factory method for creating allowed decisions"""
        return cls(allowed=True, remaining=remaining, limit=limit, strategy=strategy, key=key, **kwargs)

    @classmethod
    def denied_result(
        cls,
        key: str,
        strategy: RateLimitStrategy,
        limit: int,
        is_hotspot: bool = False,
        **kwargs,
    ) -> RateLimitDecision:
        """Factory method for denied decisions; the message tells plain and hotspot limiting apart."""
        kwargs.setdefault("error_code", RATE_LIMITED_CODE)
        kwargs.setdefault("message", HOTSPOT_LIMITED_MESSAGE if is_hotspot else RATE_LIMITED_MESSAGE)
        kwargs.setdefault("remaining", 0)
        return cls(allowed=False, limit=limit, strategy=strategy, key=key, is_hotspot=is_hotspot, **kwargs)

    @classmethod
    def fallback_result(
        cls,
        key: str,
        strategy: RateLimitStrategy,
        limit: int,
        period: int,
        fail_open: bool,
        reason: str,
        now_ms: Optional[int] = None,
        type: Optional[RateLimitType] = None,
    ) -> RateLimitDecision:
        """Decision used when the store cannot be consulted."""
        now_ms = _now_ms() if now_ms is None else now_ms
        common = dict(
            key=key,
            strategy=strategy,
            limit=limit,
            reset_at_ms=now_ms + period * 1000,
            type=type,
            degraded=True,
            checked_at_ms=now_ms,
        )
        if fail_open:
            return cls(allowed=True, remaining=limit, message=f"Rate limit check skipped: {reason}", **common)
        return cls(
            allowed=False,
            remaining=0,
            error_code=STORE_FAILURE_CODE,
            message=f"Rate limit check failed: {reason}",
            **common,
        )

    @classmethod
    def bypass_result(
        cls,
        key: str,
        strategy: RateLimitStrategy,
        limit: int,
        reason: str,
        type: Optional[RateLimitType] = None,
        now_ms: Optional[int] = None,
    ) -> RateLimitDecision:
        now_ms = _now_ms() if now_ms is None else now_ms
        return cls(
            allowed=True,
            remaining=limit,
            limit=limit,
            strategy=strategy,
            key=key,
            type=type,
            checked_at_ms=now_ms,
            metadata={"bypass_reason": reason},
        )


@dataclass
class BatchCheck:
    """One member of a ``check_batch`` call."""

    identity: str
    strategy: Optional[RateLimitStrategy] = None
    type: Optional[RateLimitType] = None
    limit: Optional[int] = None
    period: Optional[int] = None
    context: Optional[Mapping[str, Any]] = None
    params: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class RateLimitEvent:
    """What the monitor receives for every decision."""

    key: str
    allowed: bool
    remaining: int
    limit: int
    strategy: str
    is_hotspot: bool = False
    client_ip: Optional[str] = None

    @classmethod
    def from_decision(cls, decision: RateLimitDecision, client_ip: Optional[str] = None) -> RateLimitEvent:
        return cls(
            key=decision.key,
            allowed=decision.allowed,
            remaining=decision.remaining,
            limit=decision.limit,
            strategy=decision.strategy.value,
            is_hotspot=decision.is_hotspot,
            client_ip=client_ip,
        )

    @property
    def is_low_quota(self) -> bool:
        return self.allowed and self.remaining < self.limit * 0.2


@dataclass
class RateLimitStatistics:
    """Aggregated counters for one hourly or daily bucket."""

    period_type: str
    bucket: str
    total_requests: int = 0
    allowed_requests: int = 0
    blocked_requests: int = 0
    hotspot_requests: int = 0
    strategy_breakdown: Dict[str, int] = field(default_factory=dict)
    key_breakdown: Dict[str, int] = field(default_factory=dict)

    @property
    def pass_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.allowed_requests / self.total_requests * 100

    @property
    def block_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.blocked_requests / self.total_requests * 100

    @property
    def hotspot_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.hotspot_requests / self.total_requests * 100

    @property
    def has_anomalies(self) -> bool:
        """More than half of the traffic was blocked."""
        return self.block_rate > 50

    @property
    def most_active_strategy(self) -> Optional[str]:
        if not self.strategy_breakdown:
            return None
        return max(self.strategy_breakdown.items(), key=lambda item: item[1])[0]

    @property
    def most_active_key(self) -> Optional[str]:
        if not self.key_breakdown:
            return None
        return max(self.key_breakdown.items(), key=lambda item: item[1])[0]

    def summary(self) -> str:
        return (
            f"{self.period_type} {self.bucket}: total={self.total_requests} "
            f"allowed={self.allowed_requests} blocked={self.blocked_requests} "
            f"pass_rate={self.pass_rate:.1f}%"
        )


@dataclass(frozen=True)
class HotspotEntry:
    """A parameter currently on a key's hot list."""

    parameter: str
    score: int
    last_seen_ms: int


@dataclass
class HotspotRanking:
    """Day-scoped ranking of hot keys and hot client IPs."""

    day: str
    keys: List[tuple] = field(default_factory=list)
    ips: List[tuple] = field(default_factory=list)
