"""Circuit breaker for store calls.

When Redis keeps failing, every check would otherwise wait for a full socket
timeout before applying the fail-open/fail-closed policy. The breaker trips
after ``failure_threshold`` consecutive failures and rejects calls outright
until ``reset_timeout`` has elapsed, then lets trial calls through.

The breaker is shared by the synchronous and asynchronous code paths, so its
state is guarded by a ``threading.Lock`` that is never held across I/O.
"""

import threading
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ratelimiter.core.logging import logger

T = TypeVar("T")


class CircuitBreakerError(Exception):
    """Raised when the circuit breaker is open."""

    def __init__(self, breaker_name: str, message: Optional[str] = None):
        self.breaker_name = breaker_name
        if message is None:
            message = f"Circuit breaker {breaker_name} is open"
        self.message = message
        super().__init__(self.message)


class CircuitBreaker:
    """Circuit breaker with closed, open and half-open states.

    State Transitions:
    - CLOSED: All calls are allowed. After `failure_threshold` consecutive
      failures the state transitions to OPEN.
    - OPEN: All calls are rejected for `reset_timeout` seconds, then the
      state transitions to HALF-OPEN.
    - HALF-OPEN: Trial calls are allowed. A success closes the circuit, a
      failure opens it again.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        name: str = "redis",
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initializes the CircuitBreaker.

        Args:
            failure_threshold (int): Consecutive failures required to open the circuit.
            reset_timeout (float): Seconds to stay OPEN before allowing a trial call.
            name (str): Name used in log events.
            clock: Monotonic time source, replaceable in tests.
        """
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock

        self.failures = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"
        self._lock = threading.Lock()

    @property
    def is_closed(self) -> bool:
        return self.state == "closed"

    @property
    def is_open(self) -> bool:
        """Return True if calls are currently rejected.

        Moves an expired OPEN circuit to HALF-OPEN as a side effect.
        """
        with self._lock:
            return self._is_open_locked()

    def _is_open_locked(self) -> bool:
        if self.state != "open":
            return False
        if self.last_failure_time is not None and self._clock() - self.last_failure_time >= self.reset_timeout:
            self.state = "half-open"
            logger.info("Circuit breaker transitioning to half-open", breaker=self.name)
            return False
        return True

    def allow_request(self) -> bool:
        with self._lock:
            return not self._is_open_locked()

    def record_success(self) -> None:
        with self._lock:
            if self.state == "half-open":
                logger.info("Circuit breaker closed after successful half-open call", breaker=self.name)
            self.state = "closed"
            self.failures = 0
            self.last_failure_time = None

    def record_failure(self) -> None:
        with self._lock:
            self.failures += 1
            self.last_failure_time = self._clock()
            if self.state == "half-open" or self.failures >= self.failure_threshold:
                if self.state != "open":
                    logger.warning(
                        "Circuit breaker opened",
                        breaker=self.name,
                        failures=self.failures,
                    )
                self.state = "open"

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a function with circuit breaker protection.

        Raises:
            CircuitBreakerError: If the circuit is open.
            Exception: Propagates exceptions from the executed function.
        """
        if not self.allow_request():
            raise CircuitBreakerError(self.name)
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    async def execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute a coroutine function with circuit breaker protection."""
        if not self.allow_request():
            raise CircuitBreakerError(self.name)
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result
