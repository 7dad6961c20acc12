import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from ..ports.token_repo import TokenRepository
from ...utils import TRANSIENT_ERRORS, utcnow

logger = logging.getLogger(__name__)

LEASE_NAME = "token_cleanup"


class ExpiredOtpPurger(Protocol):
    def purge_expired(self, now: datetime, limit: int) -> int:
        ...


@dataclass
class TokenCleanupService:
    """Background sweeper for expired refresh tokens, revoked jtis and fallback OTP rows.

    Only the replica holding the `token_cleanup` lease sweeps; the others skip the round.
    """

    repo: TokenRepository
    otp_purger: Optional[ExpiredOtpPurger] = None
    interval_seconds: int = 600
    grace_seconds: int = 7 * 86400
    batch_size: int = 1000
    lease_seconds: int = 300
    max_retries: int = 3
    backoff_seconds: float = 0.5
    clock: Callable[[], datetime] = utcnow
    holder: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _with_backoff(self, what: str, fn: Callable[[], int]) -> int:
        delay = self.backoff_seconds
        for attempt in range(1, self.max_retries + 1):
            try:
                return fn()
            except TRANSIENT_ERRORS as e:
                if attempt == self.max_retries:
                    raise
                logger.warning(f"Cleanup of {what} failed (attempt {attempt}): {e}; retrying in {delay}s")
                if self._stop.wait(delay):
                    raise
                delay *= 2
        return 0

    def _drain(self, what: str, purge: Callable[[], int]) -> int:
        total = 0
        while not self._stop.is_set():
            deleted = self._with_backoff(what, purge)
            total += deleted
            if deleted < self.batch_size:
                break
        return total

    def run_once(self) -> Dict[str, int]:
        now = self.clock()
        if not self._with_backoff(
            "lease", lambda: self.repo.try_acquire_lease(LEASE_NAME, self.holder, now, self.lease_seconds)
        ):
            logger.debug("Token cleanup lease held by another replica; skipping")
            return {}
        try:
            cutoff = now - timedelta(seconds=self.grace_seconds)
            counts = {
                "refresh_tokens": self._drain("refresh_tokens", lambda: self.repo.purge_expired(cutoff, self.batch_size)),
                "revoked_jti": self._drain("revoked_jti", lambda: self.repo.purge_revoked_jti(now, self.batch_size)),
            }
            if self.otp_purger is not None:
                counts["otp_fallback"] = self._drain(
                    "otp_fallback", lambda: self.otp_purger.purge_expired(now, self.batch_size)
                )
        finally:
            self.repo.release_lease(LEASE_NAME, self.holder)
        if any(counts.values()):
            logger.info(f"Token cleanup removed {counts}")
        return counts

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except TRANSIENT_ERRORS as e:
                logger.error(f"Token cleanup round failed: {e}")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="token-cleanup", daemon=True)
        self._thread.start()
        logger.info(f"Token cleanup started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
