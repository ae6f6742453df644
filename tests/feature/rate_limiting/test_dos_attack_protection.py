import asyncio
from datetime import datetime, timezone

import pytest

from ratelimiter.core.rate_limiting.config import IpLimitConfig

ATTACK_AT = datetime(2023, 11, 14, 22, 20, tzinfo=timezone.utc)


def catalogue_request(service, client_ip="203.0.113.10"):
    return service.check(
        "catalogue",
        strategy="sliding_window",
        limit=20,
        period=10,
        context={"client_ip": client_ip},
        params={"slices": 10},
    )


@pytest.mark.asyncio
async def test_dos_attack_protection(async_service):
    """Test that a burst of concurrent requests is cut at the global limit.
    Based on Scenario 4: Mitigating a Denial of Service Attack.
    """
    decisions = await asyncio.gather(
        *(
            async_service.check_async(
                "catalogue", strategy="sliding_window", limit=20, period=10, params={"slices": 10}
            )
            for _ in range(50)
        )
    )

    assert sum(d.allowed for d in decisions) == 20
    assert all(d.error_code == 429 for d in decisions if not d.allowed)

    stats = async_service.monitor.get_statistics("hourly", at=ATTACK_AT)
    assert stats.total_requests == 50
    assert stats.blocked_requests == 30
    assert stats.has_anomalies


def test_sustained_attack_raises_alert(service):
    """More than 100 blocked requests on one key within an hour raise a high-frequency alert."""
    for _ in range(130):
        catalogue_request(service)

    alerts = service.monitor.get_alerts("high_frequency")
    blocked = service.monitor.get_alerts("blocked", at=ATTACK_AT)

    key = "rate_limit:global:sliding_window:global:catalogue"
    assert blocked == {key: 110}
    assert len(alerts) == 10
    assert alerts[0]["count"] == 110
    assert alerts[0]["client_ip"] == "203.0.113.10"


def test_window_recovers_after_attack(service, clock):
    for _ in range(40):
        catalogue_request(service)

    clock.advance(seconds=10)

    assert catalogue_request(service).allowed


def test_known_attacker_blacklisted(service_factory, redis_client):
    """Blacklisted addresses are rejected before touching the store."""
    service = service_factory(ip_limits=IpLimitConfig(blacklist={"198.51.100.66"}))

    decisions = [catalogue_request(service, "198.51.100.66") for _ in range(5)]

    assert all(d.error_code == 403 for d in decisions)
    assert redis_client.keys("rate_limit:global:*") == []
    assert catalogue_request(service).allowed
