import logging
from typing import Callable, Optional, TypeVar

from ...application.ports.cache import Cache
from ...utils import TRANSIENT_ERRORS
from .circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


def guarded(breaker: CircuitBreaker, op: str, primary: Callable[[], T], secondary: Callable[[], T]) -> T:
    """Run `primary` unless the breaker is open; fall back to `secondary` on a transient error.

    While half-open the primary call itself is the trial call.
    """
    if breaker.state != CircuitBreaker.OPEN:
        try:
            result = primary()
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Redis {op} failed, using local fallback: {e}")
            breaker.record_failure()
        else:
            breaker.record_success()
            return result
    return secondary()


class FallbackCache(Cache):
    """Shared Redis cache that degrades to a per-process cache while Redis is down.

    Lock counters written during an outage stay local to the replica and are
    not copied back when Redis recovers.
    """

    def __init__(self, primary: Cache, secondary: Cache, breaker: CircuitBreaker) -> None:
        self.primary = primary
        self.secondary = secondary
        self.breaker = breaker

    def get(self, key: str) -> Optional[str]:
        return guarded(self.breaker, "get", lambda: self.primary.get(key), lambda: self.secondary.get(key))

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        guarded(self.breaker, "set", lambda: self.primary.set(key, value, ttl_seconds),
                lambda: self.secondary.set(key, value, ttl_seconds))

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return guarded(self.breaker, "set_if_absent", lambda: self.primary.set_if_absent(key, value, ttl_seconds),
                       lambda: self.secondary.set_if_absent(key, value, ttl_seconds))

    def incr(self, key: str, ttl_seconds: int) -> int:
        return guarded(self.breaker, "incr", lambda: self.primary.incr(key, ttl_seconds),
                       lambda: self.secondary.incr(key, ttl_seconds))

    def delete(self, key: str) -> None:
        guarded(self.breaker, "delete", lambda: self.primary.delete(key), lambda: self.secondary.delete(key))
