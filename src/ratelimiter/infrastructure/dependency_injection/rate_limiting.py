"""Dependency wiring for the rate limiting engine.

Factories assembling the Redis clients, the store adapter, the monitor and
the service from settings. Callers that embed the engine use
:func:`get_rate_limit_service`, which builds one service per process on
first use; tests and custom deployments call :func:`create_rate_limit_service`
directly with their own clients or configuration.
"""

import threading
from typing import Optional

from redis import Redis
from redis.asyncio import Redis as AsyncRedis

from ratelimiter.core.circuit_breaker import CircuitBreaker
from ratelimiter.core.config.settings import Settings, settings as default_settings
from ratelimiter.core.logging import configure_logging, logger
from ratelimiter.core.rate_limiting import config as config_module
from ratelimiter.core.rate_limiting.config import RateLimitingConfig, reload_rate_limiting_config
from ratelimiter.domain.rate_limiting.monitor import RateLimitMonitor
from ratelimiter.domain.rate_limiting.repositories import RateLimitStore
from ratelimiter.domain.rate_limiting.services import RateLimitService
from ratelimiter.infrastructure.rate_limiting.store import RedisRateLimitStore
from ratelimiter.infrastructure.redis import (
    check_redis_health,
    create_async_redis_client,
    create_redis_client,
)

_service: Optional[RateLimitService] = None
_service_lock = threading.Lock()

# ---------------------------------------------------------------------------
# Infrastructure Layer Dependencies
# ---------------------------------------------------------------------------


def create_rate_limit_store(
    settings: Settings = default_settings,
    client: Optional[Redis] = None,
    async_client: Optional[AsyncRedis] = None,
    with_async: bool = True,
) -> RateLimitStore:
    """Factory that returns the Redis store adapter.

    Args:
        settings: Connection and circuit breaker settings
        client: Existing synchronous client; created from settings when omitted
        async_client: Existing asyncio client; created from settings when
            omitted and ``with_async`` is set
        with_async: Whether ``check_async`` should get a native async path
    """
    if client is None:
        client = create_redis_client(settings)
    if async_client is None and with_async:
        async_client = create_async_redis_client(settings)

    breaker = CircuitBreaker(
        failure_threshold=settings.REDIS_CIRCUIT_FAILURE_THRESHOLD,
        reset_timeout=settings.REDIS_CIRCUIT_RESET_TIMEOUT,
        name="redis",
    )
    return RedisRateLimitStore(client, async_client=async_client, breaker=breaker)


# ---------------------------------------------------------------------------
# Domain Service Dependencies
# ---------------------------------------------------------------------------


def create_rate_limit_service(
    store: Optional[RateLimitStore] = None,
    config: Optional[RateLimitingConfig] = None,
    settings: Settings = default_settings,
) -> RateLimitService:
    """Factory that returns a fully wired service.

    The configuration is validated before anything is built, so a broken
    policy fails at startup rather than on the first request.
    """
    config = config or config_module.rate_limiting_config
    config.validate_config()

    store = store or create_rate_limit_store(settings)
    monitor = RateLimitMonitor(store, key_prefix=config.key_prefix)
    service = RateLimitService(store, config=config, monitor=monitor)
    logger.info(
        "Rate limiting service created",
        enabled=config.enabled,
        default_strategy=config.default_strategy.value,
        fail_open=config.fail_open,
        key_prefix=config.key_prefix,
    )
    return service


def get_rate_limit_service() -> RateLimitService:
    """Process-wide service, created with logging configured on first call.

    An unreachable Redis does not prevent startup; checks then follow the
    fail-open/fail-closed policy until it comes back.
    """
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                configure_logging()
                service = create_rate_limit_service()
                if not check_redis_health(service.store.redis):
                    logger.warning("Rate limit store unreachable at startup", fail_open=service.config.fail_open)
                _service = service
    return _service


def reload_rate_limit_config(**overrides) -> RateLimitingConfig:
    """Re-read the limiting policy and apply it to the process-wide service, if built."""
    config = reload_rate_limiting_config(**overrides)
    with _service_lock:
        if _service is not None:
            _service.update_config(config)
    return config


def close_rate_limit_service() -> None:
    """Release the process-wide service's synchronous connections.

    The asyncio client is bound to an event loop; applications that used
    ``check_async`` should call :func:`aclose_rate_limit_service` instead.
    """
    global _service
    with _service_lock:
        if _service is not None:
            _service.store.close()
            _service = None


async def aclose_rate_limit_service() -> None:
    """Release both the synchronous and the asyncio connections."""
    global _service
    with _service_lock:
        service, _service = _service, None
    if service is not None:
        service.store.close()
        await service.store.aclose()
