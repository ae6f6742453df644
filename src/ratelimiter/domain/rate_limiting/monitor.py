"""
Rate Limit Monitoring and Alerting

Consumes every decision and maintains, in Redis:

- hourly and daily counters (total/allowed/blocked/hotspot, per strategy,
  per key for the hourly bucket)
- day-scoped rankings of hot keys and hot client IPs
- three alert classes: high frequency (a key blocked more than 100 times in
  one hour), hotspot (hot decisions tallied per hour) and low quota (an
  allowed decision leaving less than 20% of the limit)

Everything here is observational. Writes are pipelined, best-effort and
TTL-expired; a failure is logged and reported as ``False``, never raised, so
the admission decision already computed is never affected.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ratelimiter.core.exceptions import InvalidArgumentError
from ratelimiter.core.logging import logger
from ratelimiter.domain.rate_limiting.entities import (
    HotspotRanking,
    RateLimitEvent,
    RateLimitStatistics,
)
from ratelimiter.domain.rate_limiting.repositories import RateLimitStore

HOUR_FORMAT = "%Y-%m-%d-%H"
DAY_FORMAT = "%Y-%m-%d"

HOURLY_TTL = int(timedelta(days=7).total_seconds())
DAILY_TTL = int(timedelta(days=30).total_seconds())
HOTSPOT_RANKING_TTL = int(timedelta(days=7).total_seconds())
ALERT_TTL = int(timedelta(hours=24).total_seconds())
HIGH_FREQUENCY_LOG_TTL = int(timedelta(days=7).total_seconds())

HIGH_FREQUENCY_THRESHOLD = 100
HIGH_FREQUENCY_LOG_SIZE = 1000
LOW_QUOTA_RATIO = 0.2

ALERT_TYPES = ("blocked", "hotspot", "low_quota", "high_frequency")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitMonitor:
    """Best-effort statistics and alerting on top of the store adapter."""

    def __init__(
        self,
        store: RateLimitStore,
        key_prefix: str = "rate_limit",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.key_prefix = key_prefix
        self._clock = clock

    # ------------------------------------------------------------------
    # Key layout
    # ------------------------------------------------------------------

    def hourly_key(self, at: datetime) -> str:
        return f"{self.key_prefix}:stats:hourly:{at.strftime(HOUR_FORMAT)}"

    def daily_key(self, at: datetime) -> str:
        return f"{self.key_prefix}:stats:daily:{at.strftime(DAY_FORMAT)}"

    def hotspot_ranking_key(self, day: str, kind: str) -> str:
        return f"{self.key_prefix}:stats:hotspot:{day}:{kind}"

    def alert_key(self, alert_type: str, at: Optional[datetime] = None) -> str:
        if alert_type == "high_frequency":
            return f"{self.key_prefix}:alerts:high_frequency"
        return f"{self.key_prefix}:alerts:{alert_type}:{at.strftime(HOUR_FORMAT)}"

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    def record(self, event: RateLimitEvent, at: Optional[datetime] = None) -> bool:
        """Record one decision. Returns False if anything could not be written."""
        at = at or self._clock()
        try:
            pipe = self.store.pipeline()
            blocked_index = self._queue_event(pipe, event, at)
            results = self.store.execute_pipeline(pipe)
            count = self._blocked_count(results, blocked_index)
            if count is not None and count > HIGH_FREQUENCY_THRESHOLD:
                pipe = self.store.pipeline()
                self._queue_high_frequency(pipe, event, count, at)
                self.store.execute_pipeline(pipe)
            return True
        except Exception as e:
            logger.warning("monitor_record_failed", key=event.key, error=str(e))
            return False

    async def arecord(self, event: RateLimitEvent, at: Optional[datetime] = None) -> bool:
        """Async counterpart of :meth:`record`."""
        at = at or self._clock()
        try:
            pipe = self.store.apipeline()
            blocked_index = self._queue_event(pipe, event, at)
            results = await self.store.aexecute_pipeline(pipe)
            count = self._blocked_count(results, blocked_index)
            if count is not None and count > HIGH_FREQUENCY_THRESHOLD:
                pipe = self.store.apipeline()
                self._queue_high_frequency(pipe, event, count, at)
                await self.store.aexecute_pipeline(pipe)
            return True
        except Exception as e:
            logger.warning("monitor_record_failed", key=event.key, error=str(e))
            return False

    def _queue_event(self, pipe: Any, event: RateLimitEvent, at: datetime) -> Optional[int]:
        """Queue every counter update for one event; returns the index of the blocked-count reply."""
        hourly = self.hourly_key(at)
        daily = self.daily_key(at)
        outcome = "allowed_requests" if event.allowed else "blocked_requests"

        pipe.hincrby(hourly, "total_requests", 1)
        pipe.hincrby(hourly, outcome, 1)
        pipe.hincrby(hourly, f"strategy:{event.strategy}", 1)
        pipe.hincrby(hourly, f"key:{event.key}", 1)
        pipe.hincrby(daily, "total_requests", 1)
        pipe.hincrby(daily, outcome, 1)
        pipe.hincrby(daily, f"strategy:{event.strategy}", 1)
        if event.is_hotspot:
            pipe.hincrby(hourly, "hotspot_requests", 1)
            pipe.hincrby(daily, "hotspot_requests", 1)
        pipe.expire(hourly, HOURLY_TTL)
        pipe.expire(daily, DAILY_TTL)

        if event.is_hotspot:
            day = at.strftime(DAY_FORMAT)
            keys_ranking = self.hotspot_ranking_key(day, "keys")
            pipe.zincrby(keys_ranking, 1, event.key)
            pipe.expire(keys_ranking, HOTSPOT_RANKING_TTL)
            if event.client_ip:
                ips_ranking = self.hotspot_ranking_key(day, "ips")
                pipe.zincrby(ips_ranking, 1, event.client_ip)
                pipe.expire(ips_ranking, HOTSPOT_RANKING_TTL)

            hotspot_alerts = self.alert_key("hotspot", at)
            pipe.hincrby(hotspot_alerts, event.key, 1)
            pipe.expire(hotspot_alerts, ALERT_TTL)

        blocked_index = None
        if not event.allowed:
            blocked_alerts = self.alert_key("blocked", at)
            blocked_index = len(pipe)
            pipe.hincrby(blocked_alerts, event.key, 1)
            pipe.expire(blocked_alerts, ALERT_TTL)
        elif event.limit > 0 and event.remaining < event.limit * LOW_QUOTA_RATIO:
            low_quota = self.alert_key("low_quota", at)
            pipe.sadd(low_quota, event.key)
            pipe.expire(low_quota, ALERT_TTL)

        return blocked_index

    @staticmethod
    def _blocked_count(results: List[Any], index: Optional[int]) -> Optional[int]:
        if index is None or index >= len(results):
            return None
        return int(results[index])

    def _queue_high_frequency(self, pipe: Any, event: RateLimitEvent, count: int, at: datetime) -> None:
        log_key = self.alert_key("high_frequency")
        entry = json.dumps(
            {
                "key": event.key,
                "count": count,
                "hour": at.strftime(HOUR_FORMAT),
                "timestamp": at.isoformat(),
                "client_ip": event.client_ip,
            }
        )
        pipe.lpush(log_key, entry)
        pipe.ltrim(log_key, 0, HIGH_FREQUENCY_LOG_SIZE - 1)
        pipe.expire(log_key, HIGH_FREQUENCY_LOG_TTL)
        logger.warning("rate_limit_high_frequency_alert", key=event.key, blocked=count)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_statistics(self, period_type: str = "hourly", at: Optional[datetime] = None) -> RateLimitStatistics:
        """Aggregated counters for the hour or day containing ``at``."""
        at = at or self._clock()
        if period_type == "hourly":
            key, bucket = self.hourly_key(at), at.strftime(HOUR_FORMAT)
        elif period_type == "daily":
            key, bucket = self.daily_key(at), at.strftime(DAY_FORMAT)
        else:
            raise InvalidArgumentError(f"Unknown statistics period: {period_type!r}")

        stats = RateLimitStatistics(period_type=period_type, bucket=bucket)
        try:
            fields = self.store.read_hash(key)
        except Exception as e:
            logger.warning("monitor_read_failed", key=key, error=str(e))
            return stats

        for field, raw in fields.items():
            value = int(raw)
            if field.startswith("strategy:"):
                stats.strategy_breakdown[field[len("strategy:"):]] = value
            elif field.startswith("key:"):
                stats.key_breakdown[field[len("key:"):]] = value
            elif field in ("total_requests", "allowed_requests", "blocked_requests", "hotspot_requests"):
                setattr(stats, field, value)
        return stats

    def get_hotspot_statistics(self, day: Optional[str] = None, top_n: int = 10) -> HotspotRanking:
        """Hottest keys and client IPs of one day (``YYYY-mm-dd``)."""
        if top_n <= 0:
            raise InvalidArgumentError("top_n must be positive")
        day = day or self._clock().strftime(DAY_FORMAT)
        ranking = HotspotRanking(day=day)
        try:
            ranking.keys = [
                (member, int(score))
                for member, score in self.store.read_sorted_set(self.hotspot_ranking_key(day, "keys"), 0, top_n - 1)
            ]
            ranking.ips = [
                (member, int(score))
                for member, score in self.store.read_sorted_set(self.hotspot_ranking_key(day, "ips"), 0, top_n - 1)
            ]
        except Exception as e:
            logger.warning("monitor_read_failed", day=day, error=str(e))
        return ranking

    def get_alerts(self, alert_type: str, at: Optional[datetime] = None) -> Any:
        """
        Alerts of one type for the hour containing ``at``.

        Returns:
            ``blocked`` and ``hotspot``: mapping of key to count;
            ``low_quota``: sorted list of keys;
            ``high_frequency``: most recent alert entries (not hour-scoped)
        """
        if alert_type not in ALERT_TYPES:
            raise InvalidArgumentError(f"Unknown alert type: {alert_type!r}")
        if alert_type == "high_frequency":
            return self.recent_high_frequency_alerts()

        at = at or self._clock()
        key = self.alert_key(alert_type, at)
        try:
            if alert_type == "low_quota":
                return sorted(self.store.read_set(key))
            return {member: int(count) for member, count in self.store.read_hash(key).items()}
        except Exception as e:
            logger.warning("monitor_read_failed", key=key, error=str(e))
            return [] if alert_type == "low_quota" else {}

    def recent_high_frequency_alerts(self, count: int = 20) -> List[Dict[str, Any]]:
        try:
            entries = self.store.read_list(self.alert_key("high_frequency"), 0, count - 1)
        except Exception as e:
            logger.warning("monitor_read_failed", alert="high_frequency", error=str(e))
            return []
        return [json.loads(entry) for entry in entries]
