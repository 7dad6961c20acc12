import threading
from datetime import datetime
from typing import Callable, Dict, Optional

from ...application.ports.otp_store import EXPIRED_RETENTION, OtpStore
from ...core.otp_encryption import EncryptedOtp
from ...utils import utcnow


class InMemoryOtpStore(OtpStore):
    backend = "memory"

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._store: Dict[str, EncryptedOtp] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _retained(self, phone: str) -> Optional[EncryptedOtp]:
        rec = self._store.get(phone)
        if rec is None:
            return None
        if rec.expires_at + EXPIRED_RETENTION <= self._clock():
            del self._store[phone]
            return None
        return rec

    def store(self, otp: EncryptedOtp) -> None:
        with self._lock:
            self._store[otp.phone] = otp.tagged(self.backend)

    def get(self, phone: str) -> Optional[EncryptedOtp]:
        with self._lock:
            return self._retained(phone)

    def increment_attempt(self, phone: str) -> int:
        with self._lock:
            rec = self._retained(phone)
            if rec is None or rec.expires_at <= self._clock():
                return 0
            rec = rec.with_attempts(rec.attempt_count + 1)
            self._store[phone] = rec
            return rec.attempt_count

    def reserve_attempt(self, phone: str, max_attempts: int) -> int:
        with self._lock:
            rec = self._retained(phone)
            if rec is None or rec.expires_at <= self._clock() or rec.attempt_count >= max_attempts:
                return 0
            rec = rec.with_attempts(rec.attempt_count + 1)
            self._store[phone] = rec
            return rec.attempt_count

    def consume(self, phone: str, nonce: bytes) -> bool:
        with self._lock:
            rec = self._store.get(phone)
            if rec is None or rec.nonce != nonce:
                return False
            del self._store[phone]
            return True

    def clear(self, phone: str) -> None:
        with self._lock:
            self._store.pop(phone, None)

    def ttl(self, phone: str) -> Optional[int]:
        with self._lock:
            rec = self._retained(phone)
            if rec is None or rec.expires_at <= self._clock():
                return None
            return int((rec.expires_at - self._clock()).total_seconds())

    def exists(self, phone: str) -> bool:
        return self.ttl(phone) is not None

    def ping(self) -> bool:
        return True
