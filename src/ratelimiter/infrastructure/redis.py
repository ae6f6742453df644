"""
Redis Connection Module

Factories for the synchronous and asynchronous Redis clients the store
adapter runs on. Both clients share the same URL and timeouts; the
synchronous client's connection pool is thread-safe, so one instance serves
every thread of a process.

**Security Note**: Use ``rediss://`` (REDIS_SSL=true) whenever Redis is
reached over an untrusted network, and never log REDIS_URL since it may
embed the password.
"""

import logging
import time

from redis import Redis
from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import ConnectionError as RedisConnectionError, RedisError, TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ratelimiter.core.config.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def _client_options(settings: Settings) -> dict:
    return {
        "encoding": "utf-8",
        "decode_responses": True,
        "socket_timeout": settings.REDIS_SOCKET_TIMEOUT,
        "socket_connect_timeout": settings.REDIS_CONNECT_TIMEOUT,
        "max_connections": settings.REDIS_MAX_CONNECTIONS,
    }


def create_redis_client(settings: Settings = default_settings) -> Redis:
    """Create the synchronous client used by ``check`` and the management operations."""
    client = Redis.from_url(settings.REDIS_URL, **_client_options(settings))
    logger.debug("Redis client created")
    return client


def create_async_redis_client(settings: Settings = default_settings) -> AsyncRedis:
    """Create the asyncio client used by ``check_async``."""
    client = AsyncRedis.from_url(settings.REDIS_URL, **_client_options(settings))
    logger.debug("Async Redis client created")
    return client


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=4),
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    reraise=True,
)
def _ping(client: Redis) -> None:
    client.ping()


def check_redis_health(client: Redis) -> bool:
    """
    Verifies that Redis answers, retrying transient connection failures.

    Used at startup only. Admission checks never retry: a failing store is
    handled by the fail-open/fail-closed policy instead.

    Returns:
        bool: True if Redis answered a PING, False otherwise.
    """
    start_time = time.time()
    try:
        _ping(client)
    except RedisError as e:
        logger.error("redis_health_check_failed", extra={"error": str(e)})
        return False
    logger.info("redis_health_check_success", extra={"execution_time": time.time() - start_time})
    return True
