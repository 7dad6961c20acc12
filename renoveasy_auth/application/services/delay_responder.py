import random
import threading
import time
from typing import Callable, Optional


class DelayResponder:
    """Pads a response so that its total latency is at least `base + uniform(0, variance)` ms.

    Success and failure paths draw from the same distribution, which hides how
    far a request got before it was answered.
    """

    def __init__(self, base_ms: int = 250, variance_ms: int = 150, rng: Optional[random.Random] = None,
                 monotonic: Callable[[], float] = time.monotonic) -> None:
        self.base_ms = base_ms
        self.variance_ms = variance_ms
        self._rng = rng or random.SystemRandom()
        self._monotonic = monotonic

    def target_ms(self, extra_ms: int = 0) -> float:
        return self.base_ms + self._rng.uniform(0, self.variance_ms) + extra_ms

    def pad(self, started: float, extra_ms: int = 0, cancel: Optional[threading.Event] = None) -> float:
        """Sleep until the target latency has elapsed since `started`; returns the seconds slept.

        A set `cancel` event ends the wait immediately.
        """
        remaining = self.target_ms(extra_ms) / 1000.0 - (self._monotonic() - started)
        if remaining <= 0:
            return 0.0
        before = self._monotonic()
        if cancel is None:
            time.sleep(remaining)
        else:
            cancel.wait(remaining)
        return self._monotonic() - before
