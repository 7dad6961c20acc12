from datetime import datetime
from typing import Optional

from ...application.ports.rate_limiter import RateLimiter, RateLimitDecision
from ..cache.circuit_breaker import CircuitBreaker
from ..cache.fallback_cache import guarded


class FallbackRateLimiter(RateLimiter):
    """Redis sliding window with an in-process window used while the Redis circuit is open."""

    def __init__(self, primary: RateLimiter, secondary: RateLimiter, breaker: CircuitBreaker) -> None:
        self.primary = primary
        self.secondary = secondary
        self.breaker = breaker

    def check(self, key: str) -> RateLimitDecision:
        return guarded(self.breaker, "rate check", lambda: self.primary.check(key), lambda: self.secondary.check(key))

    def increment(self, key: str) -> int:
        return guarded(self.breaker, "rate increment", lambda: self.primary.increment(key),
                       lambda: self.secondary.increment(key))

    def acquire(self, key: str) -> RateLimitDecision:
        return guarded(self.breaker, "rate acquire", lambda: self.primary.acquire(key),
                       lambda: self.secondary.acquire(key))

    def release(self, key: str, token: str) -> None:
        # the token belongs to one of the two windows; dropping it from the other is a no-op
        guarded(self.breaker, "rate release", lambda: self.primary.release(key, token), lambda: None)
        self.secondary.release(key, token)

    def reset_at(self, key: str) -> Optional[datetime]:
        return guarded(self.breaker, "rate reset_at", lambda: self.primary.reset_at(key),
                       lambda: self.secondary.reset_at(key))
