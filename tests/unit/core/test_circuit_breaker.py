import pytest
from unittest.mock import AsyncMock, Mock

from ratelimiter.core.circuit_breaker import CircuitBreaker, CircuitBreakerError


class StepClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def step_clock():
    return StepClock()


@pytest.fixture
def breaker(step_clock):
    return CircuitBreaker(failure_threshold=3, reset_timeout=10, name="test", clock=step_clock)


def test_circuit_breaker_initial_state(breaker):
    """Test that the circuit breaker starts in closed state."""
    assert breaker.state == "closed"
    assert breaker.failures == 0
    assert breaker.is_closed is True
    assert breaker.is_open is False


def test_circuit_breaker_closed_to_open(breaker):
    """Test transition from closed to open state after failure threshold is reached."""
    for _ in range(3):
        breaker.record_failure()

    assert breaker.state == "open"
    assert breaker.failures == 3
    assert breaker.last_failure_time is not None
    assert breaker.allow_request() is False


def test_circuit_breaker_stays_closed_below_threshold(breaker):
    breaker.record_failure()
    breaker.record_failure()

    assert breaker.state == "closed"
    assert breaker.allow_request() is True


def test_circuit_breaker_open_to_half_open(breaker, step_clock):
    """Test transition from open to half-open state after reset timeout."""
    for _ in range(3):
        breaker.record_failure()

    step_clock.now += 10
    assert breaker.allow_request() is True
    assert breaker.state == "half-open"


def test_circuit_breaker_half_open_to_closed(breaker, step_clock):
    """Test transition from half-open to closed state after a successful call."""
    for _ in range(3):
        breaker.record_failure()
    step_clock.now += 11
    assert breaker.is_open is False

    breaker.record_success()
    assert breaker.state == "closed"
    assert breaker.failures == 0


def test_circuit_breaker_half_open_failure_reopens(breaker, step_clock):
    """A single failure while half-open opens the circuit again."""
    for _ in range(3):
        breaker.record_failure()
    step_clock.now += 11
    breaker.allow_request()

    breaker.record_failure()
    assert breaker.state == "open"
    assert breaker.allow_request() is False


def test_circuit_breaker_call_success(breaker):
    """Test successful execution through circuit breaker."""
    func = Mock(return_value="success")

    assert breaker.call(func, 1, flag=True) == "success"
    func.assert_called_once_with(1, flag=True)
    assert breaker.state == "closed"


def test_circuit_breaker_call_failure_propagates(breaker):
    func = Mock(side_effect=ConnectionError("down"))

    with pytest.raises(ConnectionError):
        breaker.call(func)
    assert breaker.failures == 1


def test_circuit_breaker_call_rejected_when_open(breaker):
    """Open circuit rejects calls without running them."""
    for _ in range(3):
        breaker.record_failure()
    func = Mock()

    with pytest.raises(CircuitBreakerError) as exc_info:
        breaker.call(func)

    func.assert_not_called()
    assert exc_info.value.breaker_name == "test"
    assert "test" in str(exc_info.value)


@pytest.mark.asyncio
async def test_circuit_breaker_execute_success(breaker):
    """Test successful async execution through circuit breaker."""
    func = AsyncMock(return_value="success")

    assert await breaker.execute(func, "arg") == "success"
    func.assert_awaited_once_with("arg")


@pytest.mark.asyncio
async def test_circuit_breaker_execute_failure_opens_circuit(breaker):
    """Async failures count towards the same threshold."""
    func = AsyncMock(side_effect=TimeoutError("slow"))

    for _ in range(3):
        with pytest.raises(TimeoutError):
            await breaker.execute(func)

    assert breaker.state == "open"
    with pytest.raises(CircuitBreakerError):
        await breaker.execute(func)
    assert func.await_count == 3
