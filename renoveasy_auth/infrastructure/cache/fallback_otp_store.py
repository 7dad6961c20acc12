# renoveasy_auth/infrastructure/cache/fallback_otp_store.py
"""Redis-first OTP storage with a relational fallback.

Two policies are supported:

* ``mirror``   every write goes to both backends and the database is the
               record of truth. Reads compare both and repair Redis when it
               holds a superseded or cleared record, so writes made during an
               outage win once Redis is back.
* ``failover`` the database is only touched while the Redis circuit is open.
               Phones written there are remembered and moved back to Redis
               (or cleared from it) the next time Redis is reachable.

The circuit breaker decides whether Redis is considered available.
"""
import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, Optional, Set, TypeVar

from ...application.ports.otp_store import OtpStore
from ...core.otp_encryption import EncryptedOtp
from ...core.phone import mask
from ...utils import TRANSIENT_ERRORS, utcnow
from .circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIRROR = "mirror"
FAILOVER = "failover"

_UNAVAILABLE = object()


class FallbackOtpStore(OtpStore):
    backend = "fallback"

    def __init__(self, primary: OtpStore, secondary: OtpStore, breaker: CircuitBreaker, policy: str = MIRROR,
                 clock: Callable[[], datetime] = utcnow) -> None:
        if policy not in (MIRROR, FAILOVER):
            raise ValueError(f"Unknown OTP fallback policy: {policy}")
        self.primary = primary
        self.secondary = secondary
        self.breaker = breaker
        self.policy = policy
        self.served: Counter = Counter()
        self._clock = clock
        self._lock = threading.Lock()
        # failover only: phones whose database copy is newer than Redis
        self._stale: Set[str] = set()

    def _count(self, op: str, backend: str) -> None:
        with self._lock:
            self.served[backend] += 1
        logger.debug(f"otp_store op={op} backend={backend}")

    def primary_available(self) -> bool:
        state = self.breaker.state
        if state == CircuitBreaker.CLOSED:
            return True
        if state == CircuitBreaker.OPEN:
            return False
        # half-open: a single ping decides
        if self.primary.ping():
            self.breaker.record_success()
            return True
        self.breaker.record_failure()
        return False

    def _on_primary(self, op: str, fn: Callable[[OtpStore], T]):
        """Run `fn` on Redis, returning _UNAVAILABLE instead of raising when Redis is down."""
        if not self.primary_available():
            return _UNAVAILABLE
        try:
            result = fn(self.primary)
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Redis OTP store {op} failed: {e}")
            self.breaker.record_failure()
            return _UNAVAILABLE
        self.breaker.record_success()
        self._count(op, self.primary.backend)
        return result

    def _on_secondary(self, op: str, fn: Callable[[OtpStore], T]) -> T:
        result = fn(self.secondary)
        self._count(op, self.secondary.backend)
        return result

    def _reconcile(self, phone: str) -> None:
        """Push a database copy written during an outage back to Redis."""
        with self._lock:
            if phone not in self._stale:
                return
        rec = self.secondary.get(phone)
        if rec is None:
            done = self._on_primary("reconcile", lambda s: s.clear(phone))
        else:
            done = self._on_primary("reconcile", lambda s: s.store(rec))
        if done is _UNAVAILABLE:
            return
        self.secondary.clear(phone)
        with self._lock:
            self._stale.discard(phone)
        logger.info(f"Reconciled OTP for {mask(phone)} back to Redis")

    def _write(self, op: str, phone: str, fn: Callable[[OtpStore], T]) -> Dict[str, T]:
        if self.policy == FAILOVER:
            self._reconcile(phone)
        results: Dict[str, T] = {}
        primary = self._on_primary(op, fn)
        if primary is not _UNAVAILABLE:
            results[self.primary.backend] = primary
        if self.policy == MIRROR or primary is _UNAVAILABLE:
            results[self.secondary.backend] = self._on_secondary(op, fn)
            if self.policy == FAILOVER:
                with self._lock:
                    self._stale.add(phone)
        return results

    def _authoritative(self, results: Dict[str, T]) -> T:
        # the database copy is written on every mirrored call and on every failover call it serves
        if self.secondary.backend in results:
            return results[self.secondary.backend]
        return results[self.primary.backend]

    def store(self, otp: EncryptedOtp) -> None:
        self._write("store", otp.phone, lambda s: s.store(otp))

    def get(self, phone: str) -> Optional[EncryptedOtp]:
        if self.policy == FAILOVER:
            self._reconcile(phone)
            primary = self._on_primary("get", lambda s: s.get(phone))
            if primary is not _UNAVAILABLE:
                return primary
            return self._on_secondary("get", lambda s: s.get(phone))

        primary = self._on_primary("get", lambda s: s.get(phone))
        secondary = self._on_secondary("get", lambda s: s.get(phone))
        if primary is _UNAVAILABLE:
            return secondary
        if secondary is None:
            if primary is not None:
                # cleared or consumed while Redis was unreachable
                self._on_primary("repair", lambda s: s.clear(phone))
            return None
        if primary is None or primary.nonce != secondary.nonce:
            self._on_primary("repair", lambda s: s.store(secondary))
            return secondary
        # mirrored counters can drift if Redis missed writes; trust the higher one
        return primary if primary.attempt_count >= secondary.attempt_count else secondary

    def increment_attempt(self, phone: str) -> int:
        results = self._write("increment_attempt", phone, lambda s: s.increment_attempt(phone))
        return max(results.values())

    def reserve_attempt(self, phone: str, max_attempts: int) -> int:
        results = self._write("reserve_attempt", phone, lambda s: s.reserve_attempt(phone, max_attempts))
        return self._authoritative(results)

    def consume(self, phone: str, nonce: bytes) -> bool:
        results = self._write("consume", phone, lambda s: s.consume(phone, nonce))
        return self._authoritative(results)

    def clear(self, phone: str) -> None:
        self._write("clear", phone, lambda s: s.clear(phone))

    def ttl(self, phone: str) -> Optional[int]:
        rec = self.get(phone)
        now = self._clock()
        if rec is None or rec.expires_at <= now:
            return None
        return int((rec.expires_at - now).total_seconds())

    def exists(self, phone: str) -> bool:
        return self.ttl(phone) is not None

    def ping(self) -> bool:
        return self.primary_available() or self.secondary.ping()
