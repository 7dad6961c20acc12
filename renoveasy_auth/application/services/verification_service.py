import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..ports.cache import Cache
from ..ports.otp_store import OtpStore
from ..ports.rate_limiter import RateLimiter
from ..ports.sms_provider import SmsProvider
from .account_lock import AccountLock
from .attack_detector import AttackDetector
from ...core.otp_encryption import OtpEncryption
from ...core.phone import Phone
from ...exceptions import AuthError, DecryptError, ErrorCode, SmsDeliveryError
from ...utils import generate_otp, retry_transient, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SendCodeResult:
    phone_masked: str
    expires_at: datetime
    message_id: str
    next_resend_at: datetime
    resend_after_s: int


@dataclass
class VerifyCodeResult:
    success: bool
    remaining_attempts: int = 0


def _is_code(code: Optional[str]) -> bool:
    return code is not None and len(code) == 6 and code.isascii() and code.isdigit()


@dataclass
class VerificationService:
    store: OtpStore
    encryption: OtpEncryption
    rate_limiter: RateLimiter
    sms: SmsProvider
    account_lock: AccountLock
    detector: AttackDetector
    cache: Optional[Cache] = None
    expiration_minutes: int = 10
    max_attempts: int = 5
    resend_cooldown_seconds: int = 60
    enforce_resend_cooldown: bool = False
    clock: Callable[[], datetime] = utcnow

    def _claim_cooldown(self, phone: Phone, now: datetime) -> None:
        if not (self.enforce_resend_cooldown and self.cache is not None):
            return
        key = f"resend:{phone.e164}"
        next_at = now + timedelta(seconds=self.resend_cooldown_seconds)
        claimed = retry_transient(
            lambda: self.cache.set_if_absent(key, next_at.isoformat(), self.resend_cooldown_seconds), what="cache"
        )
        if not claimed:
            held = self.cache.get(key)
            wait = self.resend_cooldown_seconds
            if held:
                wait = max(1, int((datetime.fromisoformat(held) - now).total_seconds()))
            raise AuthError(ErrorCode.RATE_LIMIT_EXCEEDED, retry_after_s=wait)

    def _drop_cooldown(self, phone: Phone) -> None:
        if self.enforce_resend_cooldown and self.cache is not None:
            self.cache.delete(f"resend:{phone.e164}")

    def send_code(self, phone: Phone) -> SendCodeResult:
        now = self.clock()
        self._claim_cooldown(phone, now)

        decision = retry_transient(lambda: self.rate_limiter.acquire(phone.e164), what="rate limiter")
        if not decision.allowed:
            self._drop_cooldown(phone)
            logger.info(f"SMS rate limit hit for {phone.masked}, retry in {decision.retry_after}s")
            raise AuthError(ErrorCode.RATE_LIMIT_EXCEEDED, retry_after_s=decision.retry_after)

        def give_back() -> None:
            self._drop_cooldown(phone)
            if decision.token:
                self.rate_limiter.release(phone.e164, decision.token)

        code = generate_otp()
        expires_at = now + timedelta(minutes=self.expiration_minutes)
        sealed = self.encryption.encrypt(code, phone.e164, created_at=now, expires_at=expires_at)
        try:
            retry_transient(lambda: self.store.store(sealed), what="otp store")
        except AuthError:
            give_back()
            raise

        try:
            message_id = self.sms.send_verification_code(phone.e164, code)
        except Exception as e:
            logger.error(f"SMS delivery to {phone.masked} failed: {e!r}")
            self.store.clear(phone.e164)
            give_back()
            if isinstance(e, SmsDeliveryError):
                raise AuthError(ErrorCode.SMS_SEND_FAILED) from e
            raise

        logger.info(f"Verification code sent to {phone.masked} via {self.sms.name}")
        next_resend_at = now + timedelta(seconds=self.resend_cooldown_seconds)
        return SendCodeResult(
            phone_masked=phone.masked,
            expires_at=expires_at,
            message_id=message_id,
            next_resend_at=next_resend_at,
            resend_after_s=self.resend_cooldown_seconds,
        )

    def check_lock(self, phone: Phone) -> None:
        """Fail fast for a locked phone; the first refusal after attempt exhaustion reports TOO_MANY_ATTEMPTS."""
        status = retry_transient(lambda: self.account_lock.check(phone.e164), what="cache")
        if not status.locked:
            return
        if self.account_lock.consume_exhaustion_notice(phone.e164):
            self.store.clear(phone.e164)
            raise AuthError(ErrorCode.TOO_MANY_ATTEMPTS, unlock_at=status.unlock_at)
        raise AuthError(ErrorCode.ACCOUNT_LOCKED, unlock_at=status.unlock_at)

    def verify_code(self, phone: Phone, code: str, ip: Optional[str] = None,
                    lock_checked: bool = False) -> VerifyCodeResult:
        if not _is_code(code):
            raise AuthError(ErrorCode.INVALID_CODE_LENGTH)
        if not lock_checked:
            self.check_lock(phone)

        record = retry_transient(lambda: self.store.get(phone.e164), what="otp store")
        if record is None:
            self.detector.observe_failure(phone.e164, ip, "code_not_found")
            raise AuthError(ErrorCode.CODE_NOT_FOUND)

        try:
            expected = self.encryption.decrypt(record, phone.e164)
        except DecryptError as e:
            logger.error(f"OTP record for {phone.masked} failed to decrypt: {e}")
            raise AuthError(ErrorCode.INTERNAL) from None

        if record.expires_at <= self.clock():
            self.store.clear(phone.e164)
            raise AuthError(ErrorCode.CODE_EXPIRED)

        if record.attempt_count >= self.max_attempts:
            self.store.clear(phone.e164)
            raise AuthError(ErrorCode.TOO_MANY_ATTEMPTS)

        # a guess is only compared once it holds one of the record's attempts
        attempts = retry_transient(
            lambda: self.store.reserve_attempt(phone.e164, self.max_attempts), what="otp store"
        )
        if attempts == 0:
            if not self.store.exists(phone.e164):
                # consumed or cleared by a concurrent request
                raise AuthError(ErrorCode.CODE_NOT_FOUND)
            raise AuthError(ErrorCode.TOO_MANY_ATTEMPTS)
        remaining = max(0, self.max_attempts - attempts)

        if hmac.compare_digest(code.encode(), expected.encode()):
            consumed = retry_transient(lambda: self.store.consume(phone.e164, record.nonce), what="otp store")
            if not consumed:
                logger.info(f"Code for {phone.masked} was already used or replaced")
                raise AuthError(ErrorCode.CODE_NOT_FOUND)
            self.account_lock.reset(phone.e164)
            logger.info(f"Verification succeeded for {phone.masked} (backend={record.backend})")
            return VerifyCodeResult(success=True, remaining_attempts=remaining)

        self.account_lock.record_failure(phone.e164, "code_mismatch", otp_exhausted=remaining == 0)
        self.detector.observe_failure(phone.e164, ip, "code_mismatch")
        logger.info(f"Code mismatch for {phone.masked}, {remaining} attempts left")
        return VerifyCodeResult(success=False, remaining_attempts=remaining)
