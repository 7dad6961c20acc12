import math
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from ...application.ports.rate_limiter import RateLimiter, RateLimitDecision
from ...utils import utcnow


class InMemoryRateLimiter(RateLimiter):
    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], datetime] = utcnow) -> None:
        self.max_requests = max_requests
        self.window = timedelta(seconds=window_seconds)
        self._store: Dict[str, List[Tuple[datetime, str]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _prune(self, key: str, now: datetime) -> List[Tuple[datetime, str]]:
        window_start = now - self.window
        times = [t for t in self._store.get(key, []) if t[0] > window_start]
        if times:
            self._store[key] = times
        else:
            self._store.pop(key, None)
        return times

    def _retry_after(self, times: List[Tuple[datetime, str]], now: datetime) -> int:
        oldest = times[0][0]
        return max(1, math.ceil((oldest + self.window - now).total_seconds()))

    def check(self, key: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            times = self._prune(key, now)
            if len(times) >= self.max_requests:
                return RateLimitDecision(allowed=False, retry_after=self._retry_after(times, now), count=len(times))
            return RateLimitDecision(allowed=True, count=len(times))

    def increment(self, key: str) -> int:
        with self._lock:
            now = self._clock()
            times = self._prune(key, now)
            times.append((now, uuid.uuid4().hex))
            self._store[key] = times
            return len(times)

    def acquire(self, key: str) -> RateLimitDecision:
        with self._lock:
            now = self._clock()
            times = self._prune(key, now)
            if len(times) >= self.max_requests:
                return RateLimitDecision(allowed=False, retry_after=self._retry_after(times, now), count=len(times))
            token = uuid.uuid4().hex
            times.append((now, token))
            self._store[key] = times
            return RateLimitDecision(allowed=True, count=len(times), token=token)

    def release(self, key: str, token: str) -> None:
        with self._lock:
            times = [t for t in self._store.get(key, []) if t[1] != token]
            if times:
                self._store[key] = times
            else:
                self._store.pop(key, None)

    def reset_at(self, key: str) -> Optional[datetime]:
        with self._lock:
            times = self._prune(key, self._clock())
            if not times:
                return None
            return times[0][0] + self.window
