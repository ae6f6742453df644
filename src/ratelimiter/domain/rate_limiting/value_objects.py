"""
Rate Limiting Value Objects

Immutable value objects representing the core concepts of the admission
controller. They encapsulate the invariants the strategy scripts rely on so
that malformed input is rejected before any store round-trip.

Value Objects:
- RateLimitStrategy: Enumeration of supported admission algorithms
- RateLimitType: Enumeration of limiting dimensions
- RateLimitKey: Namespaced, deterministic store key
- RateLimitRule: Strategy-agnostic limit/period/type/strategy tuple
- *Params: Strategy-specific parameter variants

Design Principles:
- Immutability: All value objects are immutable after creation
- Validation: Business rules enforced at construction time
- Determinism: Identical logical requests produce byte-identical keys
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union
from urllib.parse import urlsplit

from ratelimiter.core.exceptions import ConfigurationError, InvalidArgumentError

MAX_IDENTITY_LENGTH = 512

_GLOB_SPECIALS = "\\*?[]"


class RateLimitStrategy(Enum):
    """
    Enumeration of supported admission algorithms.

    - FIXED_WINDOW: One counter per window; cheap but allows 2x bursts at boundaries
    - SLIDING_WINDOW: Sliced counters summed over the trailing window
    - TOKEN_BUCKET: Refilling bucket with optional linear warmup
    - LEAKY_BUCKET: Draining bucket that smooths bursts
    - DISTRIBUTED_TOKEN_BUCKET: Global pool split across weighted nodes
    - HOTSPOT: Per-parameter adaptive limiting
    - COUNTER: Counter reset a full period after the first request
    """
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"
    LEAKY_BUCKET = "leaky_bucket"
    DISTRIBUTED_TOKEN_BUCKET = "distributed_token_bucket"
    HOTSPOT = "hotspot"
    COUNTER = "counter"

    @property
    def is_bucket(self) -> bool:
        """Bucket strategies report capacity as their limit."""
        return self in (
            RateLimitStrategy.TOKEN_BUCKET,
            RateLimitStrategy.LEAKY_BUCKET,
            RateLimitStrategy.DISTRIBUTED_TOKEN_BUCKET,
        )

    @property
    def supports_warmup(self) -> bool:
        """Strategies whose state can be pre-seeded with tokens."""
        return self in (RateLimitStrategy.TOKEN_BUCKET, RateLimitStrategy.DISTRIBUTED_TOKEN_BUCKET)

    @property
    def description(self) -> str:
        descriptions = {
            RateLimitStrategy.FIXED_WINDOW: "Fixed window counter",
            RateLimitStrategy.SLIDING_WINDOW: "Sliding window with time slices",
            RateLimitStrategy.TOKEN_BUCKET: "Token bucket with optional warmup",
            RateLimitStrategy.LEAKY_BUCKET: "Leaky bucket",
            RateLimitStrategy.DISTRIBUTED_TOKEN_BUCKET: "Weighted distributed token bucket",
            RateLimitStrategy.HOTSPOT: "Hot parameter detection",
            RateLimitStrategy.COUNTER: "Resettable counter",
        }
        return descriptions[self]

    @classmethod
    def parse(cls, value: Union[str, "RateLimitStrategy"]) -> "RateLimitStrategy":
        """Accept an enum member, its value (``fixed_window``) or its name (``FIXED_WINDOW``)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower().replace("-", "_")
            for member in cls:
                if member.value == normalized:
                    return member
        raise ConfigurationError(f"Unsupported rate limit strategy: {value!r}")


class RateLimitType(Enum):
    """Dimension a limit applies to."""
    GLOBAL = "global"
    IP = "ip"
    USER = "user"
    API = "api"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Union[str, "RateLimitType"]) -> "RateLimitType":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        raise ConfigurationError(f"Unsupported rate limit type: {value!r}")


def validate_identity(identity: Any) -> str:
    """Reject identities that cannot be embedded in a store key."""
    if not isinstance(identity, str) or not identity:
        raise InvalidArgumentError("Identity must be a non-empty string")
    if len(identity) > MAX_IDENTITY_LENGTH:
        raise InvalidArgumentError(f"Identity exceeds {MAX_IDENTITY_LENGTH} characters")
    if any(ch.isspace() or not ch.isprintable() for ch in identity):
        raise InvalidArgumentError("Identity must not contain whitespace or control characters")
    return identity


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters so a literal value can be used in MATCH."""
    return "".join(f"\\{ch}" if ch in _GLOB_SPECIALS else ch for ch in value)


# Sub-keys each strategy script derives from its base key.
_SCRIPT_SUB_KEYS = {
    RateLimitStrategy.FIXED_WINDOW: re.compile(r"fixed_window:\d+"),
    RateLimitStrategy.COUNTER: re.compile(r"counter|reset_time"),
    RateLimitStrategy.SLIDING_WINDOW: re.compile(r"sliding_window"),
    RateLimitStrategy.TOKEN_BUCKET: re.compile(r"token_bucket:(?:tokens|last_refill|created)"),
    RateLimitStrategy.LEAKY_BUCKET: re.compile(r"leaky_bucket:(?:volume|last_leak)"),
    RateLimitStrategy.DISTRIBUTED_TOKEN_BUCKET: re.compile(
        r"distributed_bucket(?::(?:global_tokens|last_refill|nodes)|:(?:node|weight|last_access):.+)?"
    ),
    RateLimitStrategy.HOTSPOT: re.compile(r"hotspot_list|hotspot_touch|detection:\d+|(?:param|hotspot_stats):.+"),
}


@dataclass(frozen=True, slots=True)
class RateLimitKey:
    """
    Immutable namespaced key: ``prefix:type:strategy:identitySegment``.

    Business Rules:
    - Keys must be deterministic for the same inputs
    - The identity segment is derived from the limiting dimension, so two
      dimensions never share a namespace
    """
    prefix: str
    type: RateLimitType
    strategy: RateLimitStrategy
    segment: str

    @property
    def value(self) -> str:
        return f"{self.prefix}:{self.type.value}:{self.strategy.value}:{self.segment}"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def build(
        cls,
        prefix: str,
        type: RateLimitType,
        strategy: RateLimitStrategy,
        identity: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> "RateLimitKey":
        """Derive the identity segment for ``type`` and assemble the key."""
        context = context or {}
        if type is RateLimitType.IP:
            segment = f"ip:{context.get('client_ip') or identity}"
        elif type is RateLimitType.USER:
            segment = f"user:{context.get('user_id') or identity}"
        elif type is RateLimitType.API:
            segment = f"api:{cls.normalize_path(context.get('api_path') or identity)}"
        elif type is RateLimitType.CUSTOM:
            segment = f"custom:{identity}"
        else:
            segment = f"global:{identity}"
        return cls(prefix=prefix, type=type, strategy=strategy, segment=segment)

    @staticmethod
    def normalize_path(path: str) -> str:
        """``/api/v1/songs/?page=2`` becomes ``_api_v1_songs``."""
        path = urlsplit(str(path)).path or "/"
        if len(path) > 1:
            path = path.rstrip("/")
        return path.replace("/", "_")

    @staticmethod
    def namespace_patterns(prefix: str, identity: str) -> tuple[str, str]:
        """SCAN patterns matching every key owned by ``identity``."""
        escaped = escape_glob(identity)
        return f"{escape_glob(prefix)}:*:{escaped}", f"{escape_glob(prefix)}:*:{escaped}:*"

    @staticmethod
    def is_owned_by(key: str, prefix: str, identity: str) -> bool:
        """
        Whether ``key`` is a base key or script sub-key of ``identity``.

        The namespace patterns also match keys whose type or strategy segment,
        or a script sub-key name, happens to equal the identity; those belong
        to other identities and are rejected here.
        """
        head = f"{prefix}:"
        if not key.startswith(head):
            return False
        parts = key[len(head):].split(":", 3)
        if len(parts) != 4:
            return False
        type_value, strategy_value, type_tag, rest = parts
        try:
            strategy = RateLimitStrategy(strategy_value)
            RateLimitType(type_value)
        except ValueError:
            return False
        if type_tag != type_value:
            return False
        if rest == identity:
            return True
        if not rest.startswith(f"{identity}:"):
            return False
        return _SCRIPT_SUB_KEYS[strategy].fullmatch(rest[len(identity) + 1:]) is not None


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    """Strategy-agnostic part of a limit: how many requests per how many seconds."""
    limit: int
    period: int
    type: RateLimitType
    strategy: RateLimitStrategy

    def __post_init__(self):
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit <= 0:
            raise ConfigurationError(f"Limit must be a positive integer, got {self.limit!r}")
        if isinstance(self.period, bool) or not isinstance(self.period, int) or self.period <= 0:
            raise ConfigurationError(f"Period must be a positive integer, got {self.period!r}")

    @property
    def period_ms(self) -> int:
        return self.period * 1000

    @property
    def nominal_rate(self) -> float:
        """Requests per second implied by limit/period."""
        return self.limit / self.period


def _require_positive(name: str, value: float) -> None:
    if isinstance(value, bool) or value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value!r}")


# ---------------------------------------------------------------------------
# Strategy-specific parameter variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FixedWindowParams:
    requested: int = 1

    def __post_init__(self):
        _require_positive("requested", self.requested)


@dataclass(frozen=True, slots=True)
class CounterParams:
    requested: int = 1

    def __post_init__(self):
        _require_positive("requested", self.requested)


@dataclass(frozen=True, slots=True)
class SlidingWindowParams:
    slices: int = 60

    def __post_init__(self):
        _require_positive("slices", self.slices)


@dataclass(frozen=True, slots=True)
class TokenBucketParams:
    capacity: int
    refill_rate: float
    warmup_period: int = 0
    requested: int = 1

    def __post_init__(self):
        _require_positive("capacity", self.capacity)
        _require_positive("refill_rate", self.refill_rate)
        _require_positive("requested", self.requested)
        if self.warmup_period < 0:
            raise ConfigurationError("warmup_period must not be negative")


@dataclass(frozen=True, slots=True)
class LeakyBucketParams:
    capacity: int
    leak_rate: float
    requested: int = 1

    def __post_init__(self):
        _require_positive("capacity", self.capacity)
        _require_positive("leak_rate", self.leak_rate)
        _require_positive("requested", self.requested)


@dataclass(frozen=True, slots=True)
class DistributedTokenBucketParams:
    capacity: int
    refill_rate: float
    node_id: str = "default"
    weight: float = 1.0
    requested: int = 1

    def __post_init__(self):
        _require_positive("capacity", self.capacity)
        _require_positive("refill_rate", self.refill_rate)
        _require_positive("weight", self.weight)
        _require_positive("requested", self.requested)
        if not self.node_id or ":" in self.node_id:
            raise ConfigurationError(f"Invalid node id: {self.node_id!r}")


@dataclass(frozen=True, slots=True)
class HotspotParams:
    parameter: str
    hotspot_limit: int
    detection_threshold: int
    detection_window: int = 300

    def __post_init__(self):
        _require_positive("hotspot_limit", self.hotspot_limit)
        _require_positive("detection_threshold", self.detection_threshold)
        _require_positive("detection_window", self.detection_window)


StrategyParams = Union[
    FixedWindowParams,
    CounterParams,
    SlidingWindowParams,
    TokenBucketParams,
    LeakyBucketParams,
    DistributedTokenBucketParams,
    HotspotParams,
]
