"""
Call-site integration for the rate limiting service.

``rate_limited`` guards any sync or async callable with one admission check
per call and raises :class:`RateLimitExceededError` when the call is denied.
"""

import inspect
from functools import wraps
from typing import Any, Callable, Mapping, Optional, Union

from ratelimiter.core.exceptions import RateLimitExceededError
from ratelimiter.domain.rate_limiting.services import RateLimitService
from ratelimiter.domain.rate_limiting.value_objects import RateLimitStrategy, RateLimitType


def rate_limited(
    service: RateLimitService,
    *,
    key: Optional[str] = None,
    key_func: Optional[Callable[..., str]] = None,
    strategy: Union[RateLimitStrategy, str, None] = None,
    type: Union[RateLimitType, str, None] = None,
    limit: Optional[int] = None,
    period: Optional[int] = None,
    params: Optional[Mapping[str, Any]] = None,
    context_func: Optional[Callable[..., Mapping[str, Any]]] = None,
    condition: Optional[Callable[..., bool]] = None,
):
    """
    Decorator applying one admission check before every call.

    Args:
        service: The service performing the check
        key: Fixed identity; defaults to the function's qualified name
        key_func: Builds the identity from the call arguments, overrides ``key``
        strategy, type, limit, period, params: Passed through to ``check``
        context_func: Builds the check context from the call arguments
        condition: Receives the call arguments; a falsy result skips the check

    Raises:
        RateLimitExceededError: Carrying the denied decision
    """

    def decorator(func):
        default_identity = key or f"{func.__module__}.{func.__qualname__}"

        def _check_kwargs(args, kwargs) -> Optional[dict]:
            if condition is not None and not condition(*args, **kwargs):
                return None
            return dict(
                identity=key_func(*args, **kwargs) if key_func is not None else default_identity,
                strategy=strategy,
                type=type,
                limit=limit,
                period=period,
                context=context_func(*args, **kwargs) if context_func is not None else None,
                params=params,
            )

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            check_kwargs = _check_kwargs(args, kwargs)
            if check_kwargs is not None:
                decision = await service.check_async(**check_kwargs)
                if not decision.allowed:
                    raise RateLimitExceededError(decision=decision)
            return await func(*args, **kwargs)

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            check_kwargs = _check_kwargs(args, kwargs)
            if check_kwargs is not None:
                decision = service.check(**check_kwargs)
                if not decision.allowed:
                    raise RateLimitExceededError(decision=decision)
            return func(*args, **kwargs)

        return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

    return decorator
