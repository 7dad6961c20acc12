import pytest

from renoveasy_auth.infrastructure.rate_limit.memory_rate_limiter import InMemoryRateLimiter


def _redis_limiter(clock, max_requests=3, window_seconds=3600):
    fakeredis = pytest.importorskip("fakeredis")
    pytest.importorskip("lupa")
    from renoveasy_auth.infrastructure.rate_limit.redis_rate_limiter import RedisRateLimiter

    return RedisRateLimiter(fakeredis.FakeRedis(), max_requests, window_seconds, prefix="rl:test:", clock=clock)


@pytest.fixture(params=["memory", "redis"])
def limiter(request, clock):
    if request.param == "memory":
        return InMemoryRateLimiter(3, 3600, clock=clock)
    return _redis_limiter(clock)


def test_allows_until_limit_then_blocks(limiter, clock):
    for i in range(3):
        decision = limiter.acquire("k1")
        assert decision.allowed
        assert decision.count == i + 1
        assert decision.token
        clock.advance(60)
    blocked = limiter.acquire("k1")
    assert not blocked.allowed
    # the oldest request leaves the window 3600s after it was made
    assert blocked.retry_after == 3600 - 180


def test_window_slides(limiter, clock):
    for _ in range(3):
        limiter.acquire("k1")
    assert not limiter.check("k1").allowed
    clock.advance(3601)
    assert limiter.check("k1").allowed
    assert limiter.acquire("k1").count == 1


def test_check_does_not_consume(limiter):
    for _ in range(5):
        assert limiter.check("k1").allowed
    assert limiter.acquire("k1").count == 1


def test_release_gives_the_slot_back(limiter):
    first = limiter.acquire("k1")
    limiter.acquire("k1")
    limiter.acquire("k1")
    assert not limiter.check("k1").allowed
    limiter.release("k1", first.token)
    assert limiter.check("k1").allowed


def test_keys_are_independent(limiter):
    for _ in range(3):
        limiter.acquire("k1")
    assert limiter.acquire("k2").allowed


def test_reset_at_tracks_oldest_entry(limiter, clock):
    assert limiter.reset_at("k1") is None
    start = clock()
    limiter.acquire("k1")
    clock.advance(10)
    limiter.acquire("k1")
    assert abs((limiter.reset_at("k1") - start).total_seconds() - 3600) < 1


def test_increment_counts_unconditionally(limiter):
    for _ in range(4):
        count = limiter.increment("k1")
    assert count == 4
    assert not limiter.acquire("k1").allowed
