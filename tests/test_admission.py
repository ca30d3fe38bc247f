import pytest

from admission import RateLimiter, check_admission, client_ip
from errors import RateLimited


def test_limit_within_window(clock):
    limiter = RateLimiter(clock=clock)
    assert all(limiter.admit("k", 3) for _ in range(3))
    assert not limiter.admit("k", 3)


def test_window_resets(clock):
    limiter = RateLimiter(window=60, clock=clock)
    for _ in range(3):
        limiter.admit("k", 3)
    clock.advance(60)
    assert limiter.admit("k", 3)


def test_keys_are_independent(clock):
    limiter = RateLimiter(clock=clock)
    limiter.admit("register:1.1.1.1", 1)
    assert not limiter.admit("register:1.1.1.1", 1)
    assert limiter.admit("register:2.2.2.2", 1)
    assert limiter.admit("token:1.1.1.1", 1)


def test_prune(clock):
    limiter = RateLimiter(clock=clock)
    limiter.admit("a", 1)
    clock.advance(30)
    limiter.admit("b", 1)
    clock.advance(30)
    assert limiter.prune() == 1
    assert len(limiter) == 1


def test_check_admission_raises(clock):
    limiter = RateLimiter(clock=clock)
    check_admission(limiter, "mcp", "9.9.9.9", 1)
    with pytest.raises(RateLimited) as exc_info:
        check_admission(limiter, "mcp", "9.9.9.9", 1, "POST", "/mcp")
    assert exc_info.value.status_code == 429


def test_no_gate_admits_everything():
    for _ in range(100):
        check_admission(None, "mcp", "9.9.9.9", 1)


def test_client_ip_from_scope():
    assert client_ip({"client": ("10.0.0.1", 1234)}) == "10.0.0.1"
    assert client_ip({}) == "unknown"
