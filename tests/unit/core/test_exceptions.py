from ratelimiter.core.exceptions import (
    ConfigurationError,
    InvalidArgumentError,
    RateLimiterError,
    RateLimitExceededError,
    StoreUnavailableError,
)
from ratelimiter.domain.rate_limiting.entities import RateLimitDecision
from ratelimiter.domain.rate_limiting.value_objects import RateLimitStrategy


def test_rate_limiter_error_default():
    # Arrange
    message = "something went wrong"

    # Act
    error = RateLimiterError(message)

    # Assert
    assert error.message == message
    assert error.code == "generic_error"
    assert str(error) == message


def test_subclass_default_codes():
    assert ConfigurationError("bad").code == "configuration_error"
    assert InvalidArgumentError("bad").code == "invalid_argument"
    assert StoreUnavailableError("down").code == "store_unavailable"


def test_subclass_custom_code():
    error = StoreUnavailableError("down", code="redis_timeout")

    assert error.code == "redis_timeout"
    assert isinstance(error, RateLimiterError)


def test_rate_limit_exceeded_error_uses_decision_message():
    # Arrange
    decision = RateLimitDecision.denied_result(
        key="rate_limit:global:fixed_window:global:login",
        strategy=RateLimitStrategy.FIXED_WINDOW,
        limit=3,
    )

    # Act
    error = RateLimitExceededError(decision=decision)

    # Assert
    assert error.decision is decision
    assert error.code == "rate_limit_exceeded"
    assert error.message == "Rate limit exceeded, please retry later"


def test_rate_limit_exceeded_error_no_decision():
    error = RateLimitExceededError()

    assert error.message == "Rate limit exceeded"
    assert error.decision is None
