import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from ..ports.cache import Cache
from ...core.phone import mask
from ...utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLDS: List[Tuple[int, int]] = [(5, 900), (10, 3600), (20, 86400)]


@dataclass
class LockStatus:
    locked: bool
    failures: int = 0
    unlock_at: Optional[datetime] = None
    reason: Optional[str] = None


class AccountLock:
    """Escalating per-phone lock-out driven by consecutive verification failures.

    State lives in the shared cache so every replica sees it:
      lock:fail:<phone>    consecutive failure counter
      lock:until:<phone>   JSON {until, reason} while locked
      lock:notice:<phone>  one-shot marker: the lock was engaged because the
                           current code ran out of attempts
    """

    def __init__(self, cache: Cache, thresholds: Sequence[Tuple[int, int]] = DEFAULT_THRESHOLDS,
                 state_ttl_seconds: int = 86400, clock: Callable[[], datetime] = utcnow) -> None:
        self.cache = cache
        self.thresholds = {int(count): int(seconds) for count, seconds in thresholds}
        self.state_ttl = max([state_ttl_seconds] + list(self.thresholds.values()))
        self._clock = clock

    def check(self, phone: str) -> LockStatus:
        raw = self.cache.get(f"lock:until:{phone}")
        failures = int(self.cache.get(f"lock:fail:{phone}") or 0)
        if raw:
            data = json.loads(raw)
            until = datetime.fromisoformat(data["until"])
            if until > self._clock():
                return LockStatus(locked=True, failures=failures, unlock_at=until, reason=data.get("reason"))
        return LockStatus(locked=False, failures=failures)

    def record_failure(self, phone: str, reason: str, otp_exhausted: bool = False) -> LockStatus:
        failures = self.cache.incr(f"lock:fail:{phone}", self.state_ttl)
        seconds = self.thresholds.get(failures)
        if seconds is None:
            return self.check(phone)
        until = self._clock() + timedelta(seconds=seconds)
        self.cache.set(f"lock:until:{phone}", json.dumps({"until": until.isoformat(), "reason": reason}), seconds)
        if otp_exhausted:
            self.cache.set(f"lock:notice:{phone}", "1", seconds)
        logger.warning(f"Account {mask(phone)} locked for {seconds}s after {failures} failures ({reason})")
        return LockStatus(locked=True, failures=failures, unlock_at=until, reason=reason)

    def consume_exhaustion_notice(self, phone: str) -> bool:
        key = f"lock:notice:{phone}"
        if self.cache.get(key) is None:
            return False
        self.cache.delete(key)
        return True

    def reset(self, phone: str) -> None:
        for key in ("fail", "until", "notice"):
            self.cache.delete(f"lock:{key}:{phone}")

    def unlock(self, phone: str) -> None:
        self.reset(phone)
        logger.info(f"Account {mask(phone)} unlocked manually")
