import logging
import threading
import time
from collections import deque
from typing import Callable, Deque

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Opens after `max_failures` failures within `window` seconds and stays open for `cooldown`.

    Once the cooldown has passed the breaker is half-open: the caller tries the
    backend and reports the outcome with `record_success` / `record_failure`.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, name: str, max_failures: int = 3, window: float = 10.0, cooldown: float = 30.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self.max_failures = max_failures
        self.window = window
        self.cooldown = cooldown
        self._clock = clock
        self._failures: Deque[float] = deque()
        self._opened_at: float = 0.0
        self._open = False
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        with self._lock:
            if not self._open:
                return self.CLOSED
            if self._clock() - self._opened_at >= self.cooldown:
                return self.HALF_OPEN
            return self.OPEN

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._open:
                # failed trial call: start a fresh cooldown
                self._opened_at = now
                return
            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.window:
                self._failures.popleft()
            if len(self._failures) >= self.max_failures:
                self._open = True
                self._opened_at = now
                self._failures.clear()
                logger.warning(f"Circuit '{self.name}' opened for {self.cooldown}s")

    def record_success(self) -> None:
        with self._lock:
            if self._open:
                logger.info(f"Circuit '{self.name}' closed")
            self._open = False
            self._failures.clear()
