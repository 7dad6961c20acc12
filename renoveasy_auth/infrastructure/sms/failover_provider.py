import logging
import threading
import time
from typing import Callable, Optional

from ...application.ports.sms_provider import SmsProvider
from ...exceptions import SmsDeliveryError

logger = logging.getLogger(__name__)


class FailoverSmsProvider(SmsProvider):
    """Send through `primary`; after a failure use `backup` until `retry_seconds` have passed."""

    def __init__(self, primary: SmsProvider, backup: SmsProvider, retry_seconds: float = 30.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.primary = primary
        self.backup = backup
        self.retry_seconds = retry_seconds
        self.name = f"{primary.name}+{backup.name}"
        self._clock = clock
        self._primary_failed_at: Optional[float] = None
        self._lock = threading.Lock()

    def _should_try_primary(self) -> bool:
        with self._lock:
            if self._primary_failed_at is None:
                return True
            return self._clock() - self._primary_failed_at >= self.retry_seconds

    def send_verification_code(self, phone: str, code: str) -> str:
        if self._should_try_primary():
            try:
                message_id = self.primary.send_verification_code(phone, code)
            except SmsDeliveryError as e:
                logger.warning(f"Primary SMS provider {self.primary.name} failed, using {self.backup.name}: {e}")
                with self._lock:
                    self._primary_failed_at = self._clock()
            else:
                with self._lock:
                    self._primary_failed_at = None
                return message_id
        try:
            return self.backup.send_verification_code(phone, code)
        except SmsDeliveryError as e:
            raise SmsDeliveryError(f"all SMS providers failed: {e}") from e

    def is_valid_phone_number(self, phone: str) -> bool:
        return self.primary.is_valid_phone_number(phone)
