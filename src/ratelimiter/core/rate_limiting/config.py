"""Rate Limiting Configuration

Centralized configuration for limiting policy: global defaults, per-type
overrides, per-role and per-route overrides, strategy tunables and hotspot
detection. Values come from environment variables prefixed ``RATE_LIMIT_``;
nested sections use ``__`` as delimiter, for example
``RATE_LIMIT_HOTSPOT__DETECTION_THRESHOLD=100``.
"""

import logging
from fnmatch import fnmatchcase
from typing import Any, Dict, Mapping, Optional, Set

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ratelimiter.core.exceptions import ConfigurationError
from ratelimiter.domain.rate_limiting.value_objects import (
    RateLimitRule,
    RateLimitStrategy,
    RateLimitType,
)

logger = logging.getLogger(__name__)


def _split_csv(v):
    if isinstance(v, str):
        return {item.strip() for item in v.split(",") if item.strip()}
    if isinstance(v, (list, set, tuple, frozenset)):
        return set(v)
    return set()


class LimitOverride(BaseModel):
    """Partial override applied on top of a per-type configuration."""

    limit: Optional[int] = Field(None, gt=0)
    period: Optional[int] = Field(None, gt=0)
    strategy: Optional[RateLimitStrategy] = None


class TypeLimitConfig(BaseModel):
    enabled: bool = True
    limit: int = Field(100, gt=0)
    period: int = Field(60, gt=0)
    strategy: RateLimitStrategy = RateLimitStrategy.SLIDING_WINDOW


class GlobalLimitConfig(TypeLimitConfig):
    limit: int = Field(10000, gt=0)


class IpLimitConfig(TypeLimitConfig):
    limit: int = Field(1000, gt=0)
    whitelist: Set[str] = Field(default_factory=lambda: {"127.0.0.1", "::1"})
    blacklist: Set[str] = Field(default_factory=set)

    @field_validator("whitelist", "blacklist", mode="before")
    @classmethod
    def parse_comma_separated_sets(cls, v):
        """Parse comma-separated strings into sets."""
        return _split_csv(v)


class UserLimitConfig(TypeLimitConfig):
    limit: int = Field(500, gt=0)
    strategy: RateLimitStrategy = RateLimitStrategy.TOKEN_BUCKET
    role_limits: Dict[str, LimitOverride] = Field(default_factory=dict)


class ApiLimitConfig(TypeLimitConfig):
    limit: int = Field(200, gt=0)
    strategy: RateLimitStrategy = RateLimitStrategy.FIXED_WINDOW
    # Keys are glob patterns matched against the raw route, e.g. "/api/v1/search*".
    specific_apis: Dict[str, LimitOverride] = Field(default_factory=dict)


class SlidingWindowConfig(BaseModel):
    default_slices: int = Field(60, gt=0)
    min_slices: int = Field(1, gt=0)
    max_slices: int = Field(3600, gt=0)


class TokenBucketConfig(BaseModel):
    # None means "derive from the rule": capacity = limit, rate = limit / period.
    default_capacity: Optional[int] = Field(None, gt=0)
    default_refill_rate: Optional[float] = Field(None, gt=0)
    default_warmup_period: int = Field(0, ge=0)
    max_capacity: int = Field(1_000_000, gt=0)
    max_refill_rate: float = Field(100_000.0, gt=0)


class LeakyBucketConfig(BaseModel):
    default_capacity: Optional[int] = Field(None, gt=0)
    default_leak_rate: Optional[float] = Field(None, gt=0)
    max_capacity: int = Field(1_000_000, gt=0)
    max_leak_rate: float = Field(100_000.0, gt=0)


class DistributedBucketConfig(BaseModel):
    default_weight: float = Field(1.0, gt=0)
    max_weight: float = Field(1000.0, gt=0)


class HotspotConfig(BaseModel):
    enabled: bool = True
    # None means "derive from the rule": threshold = limit * 2, limit = limit // 5.
    detection_threshold: Optional[int] = Field(None, gt=0)
    detection_window: int = Field(300, gt=0)
    hotspot_limit: Optional[int] = Field(None, gt=0)
    expire_time: int = Field(3600, gt=0)
    max_hotspots: int = Field(1000, gt=0)


class RateLimitingConfig(BaseSettings):
    """Configuration for the rate limiting engine."""

    enabled: bool = True
    fail_open: bool = True
    enable_log: bool = True
    enable_monitor: bool = True
    key_prefix: str = Field("rate_limit", min_length=1, pattern=r"^[A-Za-z0-9_.\-]+$")

    default_strategy: RateLimitStrategy = RateLimitStrategy.SLIDING_WINDOW
    default_type: RateLimitType = RateLimitType.GLOBAL
    default_limit: int = Field(100, gt=0)
    default_period: int = Field(60, gt=0)
    node_id: str = "default"
    # Most recently checked keys remembered per process for active_keys().
    max_active_keys: int = Field(10_000, gt=0)

    global_limits: GlobalLimitConfig = Field(default_factory=GlobalLimitConfig)
    ip_limits: IpLimitConfig = Field(default_factory=IpLimitConfig)
    user_limits: UserLimitConfig = Field(default_factory=UserLimitConfig)
    api_limits: ApiLimitConfig = Field(default_factory=ApiLimitConfig)

    sliding_window: SlidingWindowConfig = Field(default_factory=SlidingWindowConfig)
    token_bucket: TokenBucketConfig = Field(default_factory=TokenBucketConfig)
    leaky_bucket: LeakyBucketConfig = Field(default_factory=LeakyBucketConfig)
    distributed: DistributedBucketConfig = Field(default_factory=DistributedBucketConfig)
    hotspot: HotspotConfig = Field(default_factory=HotspotConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RATE_LIMIT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("default_strategy", mode="before")
    @classmethod
    def parse_strategy(cls, v):
        if isinstance(v, str):
            return RateLimitStrategy.parse(v)
        return v

    @field_validator("default_type", mode="before")
    @classmethod
    def parse_type(cls, v):
        if isinstance(v, str):
            return RateLimitType.parse(v)
        return v

    @model_validator(mode="after")
    def check_slice_bounds(self):
        sliding = self.sliding_window
        if not sliding.min_slices <= sliding.default_slices <= sliding.max_slices:
            raise ValueError("sliding_window.default_slices must lie within [min_slices, max_slices]")
        return self

    def validate_config(self) -> None:
        """Cross-field checks that pydantic cannot express per field.

        Raises:
            ConfigurationError: If any per-route or per-role override is unusable.
        """
        overrides = list(self.user_limits.role_limits.items()) + list(self.api_limits.specific_apis.items())
        for name, override in overrides:
            if override.limit is None and override.period is None and override.strategy is None:
                raise ConfigurationError(f"Override {name!r} does not change anything")
        if self.ip_limits.whitelist & self.ip_limits.blacklist:
            raise ConfigurationError("An IP cannot be whitelisted and blacklisted at the same time")

    def type_config(self, type: RateLimitType) -> Optional[TypeLimitConfig]:
        """Return the per-type section, or None for CUSTOM which has no section."""
        return {
            RateLimitType.GLOBAL: self.global_limits,
            RateLimitType.IP: self.ip_limits,
            RateLimitType.USER: self.user_limits,
            RateLimitType.API: self.api_limits,
        }.get(type)

    def find_override(self, type: RateLimitType, context: Mapping[str, Any]) -> Optional[LimitOverride]:
        """Per-route override for API limits, per-role override for USER limits."""
        if type is RateLimitType.API:
            path = context.get("api_path")
            if path:
                for pattern, override in self.api_limits.specific_apis.items():
                    if fnmatchcase(str(path), pattern):
                        return override
        elif type is RateLimitType.USER:
            role = context.get("user_role")
            if role:
                return self.user_limits.role_limits.get(str(role))
        return None

    def resolve_rule(
        self,
        type: RateLimitType,
        context: Mapping[str, Any],
        strategy: Optional[RateLimitStrategy] = None,
        limit: Optional[int] = None,
        period: Optional[int] = None,
    ) -> RateLimitRule:
        """Fill unspecified parts of a rule.

        Precedence: explicit argument, then route/role override, then the
        per-type section, then the global defaults.
        """
        section = self.type_config(type)
        override = self.find_override(type, context)

        def pick(explicit, attr, default):
            if explicit is not None:
                return explicit
            if override is not None and getattr(override, attr) is not None:
                return getattr(override, attr)
            if section is not None:
                return getattr(section, attr)
            return default

        return RateLimitRule(
            limit=pick(limit, "limit", self.default_limit),
            period=pick(period, "period", self.default_period),
            type=type,
            strategy=pick(strategy, "strategy", self.default_strategy),
        )

    def is_blacklisted(self, client_ip: Optional[str]) -> bool:
        return bool(client_ip) and client_ip in self.ip_limits.blacklist

    def get_bypass_reason(self, type: RateLimitType, context: Mapping[str, Any]) -> Optional[str]:
        """Get the reason why rate limiting is being bypassed.

        Returns:
            String describing the bypass reason, or None if no bypass
        """
        if not self.enabled:
            return "Rate limiting globally disabled via RATE_LIMIT_ENABLED=false"

        section = self.type_config(type)
        if section is not None and not section.enabled:
            return f"Rate limiting disabled for type: {type.value}"

        client_ip = context.get("client_ip")
        if type is RateLimitType.IP and client_ip and client_ip in self.ip_limits.whitelist:
            return f"Rate limiting disabled for whitelisted IP: {client_ip}"

        return None


rate_limiting_config = RateLimitingConfig()


def reload_rate_limiting_config(**overrides) -> RateLimitingConfig:
    """Re-read the environment and replace the module-level configuration."""
    global rate_limiting_config
    config = RateLimitingConfig(**overrides)
    config.validate_config()
    rate_limiting_config = config
    logger.info("Rate limiting configuration reloaded")
    return config
