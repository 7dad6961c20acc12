import logging
import threading
import uuid
from typing import List, Tuple

from ...application.ports.sms_provider import SmsProvider
from ...core.phone import mask
from ...exceptions import SmsDeliveryError
from .base import is_e164

logger = logging.getLogger(__name__)


class MockSmsProvider(SmsProvider):
    """Development provider: nothing leaves the process, codes land in `outbox` and the log."""

    name = "mock"

    def __init__(self, fail: bool = False) -> None:
        self.outbox: List[Tuple[str, str, str]] = []
        self.fail = fail
        self._lock = threading.Lock()

    def send_verification_code(self, phone: str, code: str) -> str:
        if self.fail:
            raise SmsDeliveryError("mock provider configured to fail")
        message_id = f"mock-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.outbox.append((phone, code, message_id))
        logger.info(f"[MOCK SMS] to {mask(phone)}: verification code {code} ({message_id})")
        return message_id

    def is_valid_phone_number(self, phone: str) -> bool:
        return is_e164(phone)

    def last_code(self, phone: str) -> str:
        with self._lock:
            for to, code, _ in reversed(self.outbox):
                if to == phone:
                    return code
        raise KeyError(phone)
