"""Redis implementation of the store adapter.

Strategy scripts are registered once per client with ``register_script``;
redis-py runs them through EVALSHA and transparently reloads them after a
``NOSCRIPT`` reply (for example after a Redis restart or SCRIPT FLUSH).

Every call goes through the shared circuit breaker and every client-level
failure is re-raised as :class:`StoreUnavailableError`, so no raw redis
exception ever reaches the orchestrator.
"""

import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from redis import Redis
from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from ratelimiter.core.circuit_breaker import CircuitBreaker, CircuitBreakerError
from ratelimiter.core.config.settings import settings
from ratelimiter.core.exceptions import ConfigurationError, StoreUnavailableError
from ratelimiter.core.logging import logger
from ratelimiter.core.metrics import record_metric
from ratelimiter.domain.rate_limiting.repositories import RateLimitStore
from ratelimiter.infrastructure.rate_limiting.scripts import STRATEGY_SCRIPTS

SCRIPT_RESULT_LENGTH = 4


def encode_arg(value: Any) -> str:
    """String-encode one ARGV value the way every client of the scripts does."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def parse_script_result(name: str, result: Any) -> List[int]:
    """Validate the four element reply of a strategy script."""
    if not isinstance(result, (list, tuple)) or len(result) != SCRIPT_RESULT_LENGTH:
        raise StoreUnavailableError(f"Script {name} returned a malformed result: {result!r}")
    try:
        return [int(float(value)) for value in result]
    except (TypeError, ValueError) as e:
        raise StoreUnavailableError(f"Script {name} returned a non-numeric result: {result!r}") from e


class RedisRateLimitStore(RateLimitStore):
    """
    Store adapter backed by a synchronous client and, optionally, an asyncio client.

    Both clients must point at the same Redis deployment. The circuit breaker
    is shared between them so a failing Redis trips both code paths.
    """

    def __init__(
        self,
        client: Redis,
        async_client: Optional[AsyncRedis] = None,
        breaker: Optional[CircuitBreaker] = None,
        scripts: Mapping[str, str] = STRATEGY_SCRIPTS,
    ):
        self.redis = client
        self.async_redis = async_client
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.REDIS_CIRCUIT_FAILURE_THRESHOLD,
            reset_timeout=settings.REDIS_CIRCUIT_RESET_TIMEOUT,
            name="redis",
        )
        self._scripts = {name: client.register_script(source) for name, source in scripts.items()}
        self._async_scripts = (
            {name: async_client.register_script(source) for name, source in scripts.items()}
            if async_client is not None
            else {}
        )

    @property
    def supports_async(self) -> bool:
        return self.async_redis is not None

    def _guard(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return self.breaker.call(func, *args, **kwargs)
        except CircuitBreakerError as e:
            raise StoreUnavailableError(str(e)) from e
        except RedisError as e:
            logger.warning("store_operation_failed", operation=operation, error=str(e))
            raise StoreUnavailableError(f"Redis {operation} failed: {e}") from e

    async def _aguard(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await self.breaker.execute(func, *args, **kwargs)
        except CircuitBreakerError as e:
            raise StoreUnavailableError(str(e)) from e
        except RedisError as e:
            logger.warning("store_operation_failed", operation=operation, error=str(e))
            raise StoreUnavailableError(f"Redis {operation} failed: {e}") from e

    def _lookup(self, registry: Dict[str, Any], name: str) -> Any:
        try:
            return registry[name]
        except KeyError:
            raise ConfigurationError(f"No script registered under {name!r}") from None

    @record_metric("store")
    def eval_script(self, name: str, key: str, args: Sequence[Any]) -> List[int]:
        script = self._lookup(self._scripts, name)
        result = self._guard(f"script {name}", script, keys=[key], args=[encode_arg(a) for a in args])
        return parse_script_result(name, result)

    @record_metric("store")
    async def aeval_script(self, name: str, key: str, args: Sequence[Any]) -> List[int]:
        if self.async_redis is None:
            raise ConfigurationError("RedisRateLimitStore was created without an async client")
        script = self._lookup(self._async_scripts, name)
        result = await self._aguard(f"script {name}", script, keys=[key], args=[encode_arg(a) for a in args])
        return parse_script_result(name, result)

    def scan_keys(self, pattern: str) -> List[str]:
        return self._guard("scan", lambda: list(self.redis.scan_iter(match=pattern, count=500)))

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._guard("delete", self.redis.delete, *keys))

    def ttl(self, key: str) -> int:
        return int(self._guard("ttl", self.redis.ttl, key))

    def set_values(
        self,
        values: Mapping[str, Any],
        ttl: int,
        only_if_absent: Iterable[str] = (),
    ) -> None:
        absent = set(only_if_absent)
        pipe = self.redis.pipeline(transaction=True)
        for key, value in values.items():
            pipe.set(key, encode_arg(value), ex=ttl, nx=key in absent)
        self._guard("set", pipe.execute)

    def read_hash(self, key: str) -> Dict[str, str]:
        return self._guard("hgetall", self.redis.hgetall, key)

    def read_sorted_set(self, key: str, start: int = 0, stop: int = -1) -> List[Tuple[str, float]]:
        return self._guard("zrevrange", self.redis.zrevrange, key, start, stop, withscores=True)

    def read_set(self, key: str) -> Set[str]:
        return set(self._guard("smembers", self.redis.smembers, key))

    def read_list(self, key: str, start: int = 0, stop: int = -1) -> List[str]:
        return self._guard("lrange", self.redis.lrange, key, start, stop)

    def pipeline(self) -> Any:
        return self.redis.pipeline(transaction=False)

    def apipeline(self) -> Any:
        if self.async_redis is None:
            raise ConfigurationError("RedisRateLimitStore was created without an async client")
        return self.async_redis.pipeline(transaction=False)

    def execute_pipeline(self, pipe: Any) -> List[Any]:
        return self._guard("pipeline", pipe.execute)

    async def aexecute_pipeline(self, pipe: Any) -> List[Any]:
        return await self._aguard("pipeline", pipe.execute)

    def health_check(self) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            self._guard("ping", self.redis.ping)
        except StoreUnavailableError as e:
            return {"healthy": False, "latency_ms": None, "error": str(e), "circuit": self.breaker.state}
        return {
            "healthy": True,
            "latency_ms": (time.perf_counter() - start) * 1000,
            "error": None,
            "circuit": self.breaker.state,
        }

    def close(self) -> None:
        self.redis.close()

    async def aclose(self) -> None:
        if self.async_redis is not None:
            await self.async_redis.aclose()
