from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    count: int = 0
    # handle for giving the slot back; set only when a slot was taken
    token: Optional[str] = None


class RateLimiter(Protocol):
    def check(self, key: str) -> RateLimitDecision:
        ...

    def increment(self, key: str) -> int:
        ...

    def acquire(self, key: str) -> RateLimitDecision:
        """Atomic check + increment."""
        ...

    def release(self, key: str, token: str) -> None:
        ...

    def reset_at(self, key: str) -> Optional[datetime]:
        ...
