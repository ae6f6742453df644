"""
In-process metrics for store round-trips and admission decisions.
"""
from typing import Dict, Any
from datetime import datetime, timezone
import inspect
import threading
import time
from functools import wraps

from ratelimiter.core.logging import logger
from ratelimiter.core.config.settings import settings


class MetricsCollector:
    """
    Collects and manages engine metrics.

    This class keeps two families of counters:
    - Store metrics: per operation count, total duration, successes and errors
    - Decision metrics: per strategy allowed/blocked/hotspot/degraded counts
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._metrics: Dict[str, Any] = {"store": {}, "decisions": {}}
        self._start_time = datetime.now(timezone.utc)

    def record_store_metric(
        self,
        operation: str,
        duration: float,
        success: bool
    ) -> None:
        """Record one store round-trip."""
        with self._lock:
            ops = self._metrics["store"]
            if operation not in ops:
                ops[operation] = {
                    "count": 0,
                    "total_duration": 0.0,
                    "success_count": 0,
                    "error_count": 0
                }
            ops[operation]["count"] += 1
            ops[operation]["total_duration"] += duration
            if success:
                ops[operation]["success_count"] += 1
            else:
                ops[operation]["error_count"] += 1

    def record_decision_metric(
        self,
        strategy: str,
        allowed: bool,
        hotspot: bool = False,
        degraded: bool = False
    ) -> None:
        """Record the outcome of one admission check."""
        with self._lock:
            decisions = self._metrics["decisions"]
            if strategy not in decisions:
                decisions[strategy] = {
                    "allowed": 0,
                    "blocked": 0,
                    "hotspot": 0,
                    "degraded": 0
                }
            decisions[strategy]["allowed" if allowed else "blocked"] += 1
            if hotspot:
                decisions[strategy]["hotspot"] += 1
            if degraded:
                decisions[strategy]["degraded"] += 1

    def get_metrics(self) -> Dict[str, Any]:
        """Snapshot of all collected metrics."""
        with self._lock:
            return {
                "store": {name: dict(values) for name, values in self._metrics["store"].items()},
                "decisions": {name: dict(values) for name, values in self._metrics["decisions"].items()},
                "uptime": (datetime.now(timezone.utc) - self._start_time).total_seconds(),
            }

    def reset_metrics(self) -> None:
        """Reset all metrics to initial state."""
        with self._lock:
            self._metrics = {"store": {}, "decisions": {}}
            self._start_time = datetime.now(timezone.utc)


# Global metrics collector instance
metrics_collector = MetricsCollector()


def record_metric(metric_type: str):
    """
    Decorator recording duration and outcome of sync or async calls.

    Args:
        metric_type: Metric family; only 'store' is collected per operation
    """
    def decorator(func):
        def _record(duration: float, success: bool) -> None:
            if metric_type == "store":
                metrics_collector.record_store_metric(func.__name__, duration, success)
            if settings.DEBUG:
                logger.debug(
                    f"{metric_type}_operation_completed",
                    operation=func.__name__,
                    duration=duration,
                    success=success,
                )

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception:
                _record(time.perf_counter() - start_time, False)
                raise
            _record(time.perf_counter() - start_time, True)
            return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception:
                _record(time.perf_counter() - start_time, False)
                raise
            _record(time.perf_counter() - start_time, True)
            return result

        return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

    return decorator
