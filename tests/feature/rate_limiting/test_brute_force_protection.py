import pytest

from ratelimiter.adapters.decorators import rate_limited
from ratelimiter.core.exceptions import RateLimitExceededError

ATTACKER_IP = "192.168.1.100"
VISITOR_IP = "192.168.1.200"


def login_attempt(service, client_ip):
    return service.check(
        "login",
        type="ip",
        strategy="fixed_window",
        limit=5,
        period=60,
        context={"client_ip": client_ip, "api_path": "/api/v1/auth/login"},
    )


def test_login_brute_force_protection(service, clock):
    """Test rate limiting protection against brute force attacks on the login endpoint.
    A malicious client hammers the login endpoint from one address.
    Based on Scenario 1: Protecting a Login Endpoint from Brute Force Attacks.
    """
    for i in range(5):
        decision = login_attempt(service, ATTACKER_IP)
        assert decision.allowed, f"Attempt {i+1} should be allowed"
        assert decision.remaining == 4 - i

    blocked = login_attempt(service, ATTACKER_IP)
    assert not blocked.allowed, "Sixth attempt should be blocked"
    assert blocked.error_code == 429
    assert blocked.retry_after == 60
    assert blocked.to_http_headers()["Retry-After"] == "60"

    # A different client is not affected by the attacker's window
    assert login_attempt(service, VISITOR_IP).allowed

    # Still blocked late in the window
    clock.advance(seconds=59)
    assert not login_attempt(service, ATTACKER_IP).allowed

    # A new window opens
    clock.advance(seconds=1)
    assert login_attempt(service, ATTACKER_IP).allowed


def test_support_unblocks_locked_out_address(service):
    """An operator reset lifts the lockout immediately."""
    for _ in range(6):
        login_attempt(service, ATTACKER_IP)
    assert service.exists(ATTACKER_IP)

    assert service.reset(ATTACKER_IP) is True

    decision = login_attempt(service, ATTACKER_IP)
    assert decision.allowed
    assert decision.remaining == 4


def test_login_handler_guarded_by_decorator(service):
    """The login handler raises once the per-address budget is spent."""

    @rate_limited(
        service,
        key="login",
        type="ip",
        strategy="fixed_window",
        limit=3,
        period=60,
        context_func=lambda client_ip, password: {"client_ip": client_ip},
    )
    def login(client_ip, password):
        return password == "correct horse"

    for _ in range(3):
        assert login(ATTACKER_IP, "guess") is False

    with pytest.raises(RateLimitExceededError) as exc_info:
        login(ATTACKER_IP, "correct horse")

    assert exc_info.value.decision.key == f"rate_limit:ip:fixed_window:ip:{ATTACKER_IP}"
    assert login(VISITOR_IP, "correct horse") is True
