"""Centralized, structured exception hierarchy for the rate limiter.

Every error raised by the engine derives from :class:`RateLimiterError` and
carries a machine-readable ``code`` for programmatic handling and a
human-readable ``message`` for logging.

The hierarchy is designed to:
- Separate fatal setup problems from recoverable infrastructure failures.
- Keep raw Redis exceptions from leaking past the store adapter.
- Give call-site integrations a single exception to catch for denials.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from ratelimiter.domain.rate_limiting.entities import RateLimitDecision

__all__: Final = [
    "RateLimiterError",
    "ConfigurationError",
    "InvalidArgumentError",
    "StoreUnavailableError",
    "RateLimitExceededError",
]


class RateLimiterError(Exception):
    """Base exception class for all custom errors in the rate limiter.

    Attributes:
        message (str): A human-readable error message, suitable for logging.
        code (str): A unique, machine-readable error code.
    """

    message: str
    code: str = "generic_error"

    def __init__(self, message: str, code: str = "generic_error"):
        self.message = message
        self.code = code
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Setup errors (fatal, surfaced immediately)
# ---------------------------------------------------------------------------


class ConfigurationError(RateLimiterError):
    """Raised for unsupported strategies, non-positive limits or periods and
    tunables outside the configured bounds.

    These are never silently defaulted.
    """

    def __init__(self, message: str, code: str = "configuration_error"):
        super().__init__(message, code)


class InvalidArgumentError(RateLimiterError):
    """Raised when an identity or context is malformed.

    Always raised before any store round-trip.
    """

    def __init__(self, message: str, code: str = "invalid_argument"):
        super().__init__(message, code)


# ---------------------------------------------------------------------------
# Operational errors
# ---------------------------------------------------------------------------


class StoreUnavailableError(RateLimiterError):
    """Raised by the store adapter when Redis cannot be consulted.

    Covers connection failures, timeouts, script errors, malformed script
    results and an open circuit breaker. The orchestrator translates it into
    a fail-open or fail-closed decision.
    """

    def __init__(self, message: str, code: str = "store_unavailable"):
        super().__init__(message, code)


class RateLimitExceededError(RateLimiterError):
    """Raised by the ``rate_limited`` decorator when a call is denied.

    Carries the denied decision so callers can build backoff hints.
    """

    def __init__(
        self,
        message: str | None = None,
        code: str = "rate_limit_exceeded",
        decision: RateLimitDecision | None = None,
    ):
        if message is None:
            message = decision.message if decision is not None and decision.message else "Rate limit exceeded"
        self.decision = decision
        super().__init__(message, code)
