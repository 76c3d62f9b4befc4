"""
Tests for the sliding-window rate limiter, failure penalties and the HTTP middleware.
Time is driven by an injected clock.
"""
import threading

import pytest
from fastapi.testclient import TestClient

from media_server.database import init_db
from media_server.main import app
from media_server.rate_limit import (
    LIMITER_DEFAULT,
    LIMITER_TOKEN,
    RateLimiter,
    get_limiter,
    is_failed_response,
    reset_rate_limiters,
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    init_db()
    return TestClient(app)


def test_allows_up_to_limit_then_denies(clock):
    limiter = RateLimiter("t", max_requests=3, window_seconds=10, now=clock)
    for expected_remaining in (2, 1, 0):
        decision = limiter.check("1.2.3.4")
        assert decision.allowed
        assert decision.remaining == expected_remaining
    denied = limiter.check("1.2.3.4")
    assert not denied.allowed
    assert denied.remaining == 0
    assert denied.retry_after == pytest.approx(10)
    assert denied.retry_after_seconds == 10


def test_window_slides(clock):
    limiter = RateLimiter("t", max_requests=2, window_seconds=10, now=clock)
    assert limiter.is_allowed("ip")
    clock.advance(1)
    assert limiter.is_allowed("ip")
    clock.advance(1)
    denied = limiter.check("ip")
    assert not denied.allowed
    # First request (t=0) expires at t=10; we are at t=2
    assert denied.retry_after == pytest.approx(8)
    clock.advance(8.5)
    assert limiter.is_allowed("ip")


def test_denied_requests_are_not_recorded(clock):
    limiter = RateLimiter("t", max_requests=1, window_seconds=10, now=clock)
    assert limiter.is_allowed("ip")
    for _ in range(5):
        clock.advance(1)
        assert not limiter.is_allowed("ip")
    clock.advance(5.5)
    assert limiter.is_allowed("ip")


def test_identities_are_independent(clock):
    limiter = RateLimiter("t", max_requests=1, window_seconds=10, now=clock)
    assert limiter.is_allowed("a")
    assert not limiter.is_allowed("a")
    assert limiter.is_allowed("b")


def test_penalty_consumes_extra_slots(clock):
    limiter = RateLimiter("t", max_requests=20, window_seconds=60, failure_penalty=9, now=clock)
    assert limiter.check("ip").remaining == 19
    assert limiter.penalize("ip") == 9
    assert limiter.check("ip").remaining == 9


def test_penalty_lockout_doubles_and_is_capped(clock):
    limiter = RateLimiter(
        "t",
        max_requests=10,
        window_seconds=60,
        failure_penalty=9,
        max_lockout_seconds=300,
        now=clock,
    )
    limiter.check("ip")
    limiter.penalize("ip")
    first = limiter.check("ip")
    assert not first.allowed
    assert first.retry_after == pytest.approx(120)

    clock.advance(121)
    assert limiter.check("ip").allowed
    limiter.penalize("ip")
    second = limiter.check("ip")
    assert second.retry_after == pytest.approx(240)

    clock.advance(241)
    assert limiter.check("ip").allowed
    limiter.penalize("ip")
    third = limiter.check("ip")
    assert third.retry_after == pytest.approx(300)


def test_zero_penalty_is_noop(clock):
    limiter = RateLimiter("t", max_requests=2, window_seconds=10, now=clock)
    assert limiter.penalize("ip", penalty=0) == 0
    assert limiter.check("ip").remaining == 1


def test_purge_stale_drops_idle_identities(clock):
    limiter = RateLimiter("t", max_requests=5, window_seconds=10, now=clock)
    limiter.check("a")
    limiter.check("b")
    assert limiter.tracked_identities() == 2
    clock.advance(11)
    assert limiter.purge_stale() == 2
    assert limiter.tracked_identities() == 0


def test_concurrent_checks_never_exceed_limit(clock):
    limiter = RateLimiter("t", max_requests=50, window_seconds=60, now=clock)
    allowed = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            if limiter.is_allowed("ip"):
                with lock:
                    allowed.append(1)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(allowed) == 50


def test_is_failed_response():
    assert is_failed_response(401, "/admin/api/tokens/x")
    assert is_failed_response(403, "/admin/cache/lru")
    assert is_failed_response(404, "/feed/guess")
    assert is_failed_response(404, "/media/guess/a.mp3")
    assert not is_failed_response(404, "/admin/api/tokens/unknown")
    assert not is_failed_response(405, "/oauth/jwks")
    assert not is_failed_response(429, "/feed/x")
    assert not is_failed_response(500, "/feed/x")
    assert not is_failed_response(200, "/feed/x")


# --- middleware ---


def test_health_is_not_rate_limited(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert "X-RateLimit-Limit" not in r.headers


def test_rate_limit_headers_present(client):
    r = client.get("/oauth/jwks")
    assert r.status_code == 200
    limiter = get_limiter(LIMITER_DEFAULT)
    assert r.headers["X-RateLimit-Limit"] == str(limiter.max_requests)
    assert int(r.headers["X-RateLimit-Remaining"]) == limiter.max_requests - 1


def test_token_guessing_is_locked_out(client):
    get_limiter(LIMITER_DEFAULT).max_requests = 20
    assert client.get("/feed/guess-one").status_code == 404
    assert client.get("/feed/guess-two").status_code == 404
    r = client.get("/feed/guess-three")
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1
    assert r.json()["error"] == "rate_limited"


def test_method_not_allowed_is_not_penalized(client):
    get_limiter(LIMITER_DEFAULT).max_requests = 20
    remaining = []
    for _ in range(3):
        r = client.post("/oauth/jwks")
        assert r.status_code == 405
        remaining.append(int(r.headers["X-RateLimit-Remaining"]))
    assert remaining == [19, 18, 17]


def test_limits_are_per_client_ip(client):
    get_limiter(LIMITER_DEFAULT).max_requests = 2
    for _ in range(2):
        client.get("/oauth/jwks", headers={"X-Forwarded-For": "10.0.0.1"})
    assert client.get("/oauth/jwks", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429
    r = client.get("/oauth/jwks", headers={"X-Forwarded-For": "10.0.0.2, 172.16.0.1"})
    assert r.status_code == 200


def test_penalized_identity_waits_longer_than_unpenalized(clock):
    plain = RateLimiter("plain", max_requests=10, window_seconds=60, now=clock)
    penalized = RateLimiter("penalized", max_requests=10, window_seconds=60, failure_penalty=9, now=clock)
    plain.check("ip")
    penalized.check("ip")
    penalized.penalize("ip")
    clock.advance(1)
    for _ in range(9):
        plain.check("ip")
    plain_wait = plain.check("ip").retry_after
    penalized_wait = penalized.check("ip").retry_after
    assert penalized_wait > plain_wait > 0


def test_reset_clears_denied_identity(clock):
    limiter = RateLimiter("t", max_requests=1, window_seconds=60, now=clock)
    limiter.check("ip")
    limiter.penalize("ip")
    assert not limiter.is_allowed("ip")
    limiter.reset()
    assert limiter.is_allowed("ip")


def test_registry_reset_reaches_limiters_held_elsewhere():
    held = get_limiter(LIMITER_TOKEN)
    original_limit = held.max_requests
    held.max_requests = 1
    held.check("ip")
    held.penalize("ip")
    assert not held.is_allowed("ip")

    reset_rate_limiters()
    assert get_limiter(LIMITER_TOKEN) is held
    assert held.max_requests == original_limit
    assert held.is_allowed("ip")
