import fakeredis
import pytest

from ratelimiter.core.circuit_breaker import CircuitBreaker
from ratelimiter.core.metrics import metrics_collector
from ratelimiter.core.rate_limiting.config import RateLimitingConfig
from ratelimiter.domain.rate_limiting.services import RateLimitService
from ratelimiter.infrastructure.rate_limiting.store import RedisRateLimitStore

# 2023-11-14T22:20:00Z, aligned to 10 s, 60 s and 300 s boundaries
START_MS = 1_700_000_400_000


class FakeClock:
    """Epoch-millisecond clock advanced explicitly by tests."""

    def __init__(self, start_ms: int = START_MS):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float = 0, ms: int = 0) -> int:
        self.now_ms += int(seconds * 1000) + ms
        return self.now_ms

    def at(self, seconds: float) -> int:
        """Jump to ``seconds`` after the start instant."""
        self.now_ms = START_MS + int(seconds * 1000)
        return self.now_ms


class MonotonicClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def make_config(**overrides) -> RateLimitingConfig:
    """Configuration isolated from any .env file in the working directory."""
    return RateLimitingConfig(_env_file=None, **overrides)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics_collector.reset_metrics()
    yield
    metrics_collector.reset_metrics()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server):
    client = fakeredis.FakeRedis(server=redis_server, decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def async_redis_client(redis_server):
    return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def breaker():
    return CircuitBreaker(failure_threshold=3, reset_timeout=30.0, name="test", clock=MonotonicClock())


@pytest.fixture
def store(redis_client, breaker):
    return RedisRateLimitStore(redis_client, breaker=breaker)


@pytest.fixture
def async_store(redis_client, async_redis_client, breaker):
    return RedisRateLimitStore(redis_client, async_client=async_redis_client, breaker=breaker)


@pytest.fixture
def broken_store():
    """Store whose Redis refuses every command."""
    server = fakeredis.FakeServer()
    server.connected = False
    client = fakeredis.FakeRedis(server=server, decode_responses=True)
    async_client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    return RedisRateLimitStore(
        client,
        async_client=async_client,
        breaker=CircuitBreaker(failure_threshold=100, reset_timeout=30.0, name="broken"),
    )


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def service(store, config, clock):
    return RateLimitService(store, config=config, clock=clock)


@pytest.fixture
def async_service(async_store, config, clock):
    return RateLimitService(async_store, config=config, clock=clock)


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def service_factory(store, clock):
    """Build a service on the shared store with configuration overrides."""

    def factory(target_store=None, **overrides):
        return RateLimitService(target_store or store, config=make_config(**overrides), clock=clock)

    return factory
