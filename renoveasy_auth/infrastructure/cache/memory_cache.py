import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from ...application.ports.cache import Cache
from ...utils import utcnow


class InMemoryCache(Cache):
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._store: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        rec = self._store.get(key)
        if not rec:
            return None
        value, expires_at = rec
        if expires_at <= self._clock():
            del self._store[key]
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._store[key] = (value, self._clock() + timedelta(seconds=ttl_seconds))

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._store[key] = (value, self._clock() + timedelta(seconds=ttl_seconds))
            return True

    def incr(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                self._store[key] = ("1", self._clock() + timedelta(seconds=ttl_seconds))
                return 1
            count = int(current) + 1
            self._store[key] = (str(count), self._store[key][1])
            return count

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)
