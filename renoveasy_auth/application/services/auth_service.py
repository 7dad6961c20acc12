import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..ports.audit_logger import AuditLogger
from ..ports.rate_limiter import RateLimiter
from ..ports.user_repo import UserRepository, UserType
from .account_lock import AccountLock
from .attack_detector import AttackDetector, RecommendedAction
from .delay_responder import DelayResponder
from .token_service import TokenPair, TokenService
from .verification_service import SendCodeResult, VerificationService
from ...core.phone import Phone, PhoneNormalizer
from ...exceptions import AuthError, ErrorCode
from ...utils import retry_transient, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    captcha_verified: bool = False
    # set by the transport when the client goes away
    cancel: Optional[threading.Event] = None


@dataclass
class LoginResult:
    tokens: TokenPair
    user_id: str
    user_type: Optional[str]
    requires_type_selection: bool
    is_new_user: bool


@dataclass
class AuthService:
    normalizer: PhoneNormalizer
    verification: VerificationService
    tokens: TokenService
    users: UserRepository
    account_lock: AccountLock
    detector: AttackDetector
    delay: DelayResponder
    audit: AuditLogger
    ip_limiter: Optional[RateLimiter] = None
    slow_penalty_ms: int = 1000
    allow_registration: bool = True
    require_immediate_user_type: bool = False
    clock: Callable[[], datetime] = utcnow
    monotonic: Callable[[], float] = time.monotonic

    def _audit(self, event: str, ctx: RequestContext, success: bool, phone: Optional[Phone] = None,
               user_id: Optional[str] = None, error: Optional[AuthError] = None, **details) -> None:
        if error is not None:
            details["error"] = error.code.value
        self.audit.record(
            event,
            phone.masked if phone else None,
            ctx.ip,
            ctx.user_agent,
            success,
            self.clock(),
            user_id=user_id,
            details=details or None,
        )

    def _screen(self, phone: Phone, ctx: RequestContext, sending: bool) -> int:
        """Apply the attack detector's advice; returns extra delay in ms."""
        assessment = self.detector.assess(phone.e164, ctx.ip, sending=sending)
        action = assessment.action
        if action == RecommendedAction.ALLOW:
            return 0
        patterns = [p.value for p in assessment.patterns]
        logger.warning(f"Attack patterns {patterns} for {phone.masked} from {ctx.ip}: {action.value}")
        if action == RecommendedAction.SLOW:
            return self.slow_penalty_ms
        if action == RecommendedAction.CHALLENGE_CAPTCHA and ctx.captcha_verified:
            return 0
        raise AuthError(ErrorCode.SUSPECTED_ABUSE, action=action.value)

    def _ensure_unlocked(self, phone: Phone) -> None:
        status = retry_transient(lambda: self.account_lock.check(phone.e164), what="cache")
        if status.locked:
            raise AuthError(ErrorCode.ACCOUNT_LOCKED, unlock_at=status.unlock_at)

    def send_code(self, phone: str, country_code: str, ctx: Optional[RequestContext] = None) -> SendCodeResult:
        ctx = ctx or RequestContext()
        started = self.monotonic()
        extra_ms = 0
        shaped = True
        normalized: Optional[Phone] = None
        ip_slot = None
        try:
            normalized = self.normalizer.normalize(phone, country_code)
            self._ensure_unlocked(normalized)
            extra_ms = self._screen(normalized, ctx, sending=True)
            if self.ip_limiter is not None and ctx.ip:
                ip_slot = retry_transient(lambda: self.ip_limiter.acquire(ctx.ip), what="rate limiter")
                if not ip_slot.allowed:
                    raise AuthError(ErrorCode.RATE_LIMIT_EXCEEDED, retry_after_s=ip_slot.retry_after)
            try:
                result = self.verification.send_code(normalized)
            except AuthError:
                if ip_slot is not None and ip_slot.token:
                    self.ip_limiter.release(ctx.ip, ip_slot.token)
                raise
            self.detector.observe_send(normalized.e164, ctx.ip)
            self._audit("send_code", ctx, True, normalized, message_id=result.message_id)
            return result
        except AuthError as e:
            if e.code == ErrorCode.ACCOUNT_LOCKED:
                shaped = False
            self._audit("send_code", ctx, False, normalized, error=e)
            raise
        finally:
            if shaped:
                self.delay.pad(started, extra_ms, ctx.cancel)

    def verify_code(self, phone: str, country_code: str, code: str,
                    ctx: Optional[RequestContext] = None) -> LoginResult:
        ctx = ctx or RequestContext()
        started = self.monotonic()
        extra_ms = 0
        shaped = True
        normalized: Optional[Phone] = None
        try:
            normalized = self.normalizer.normalize(phone, country_code)
            self.verification.check_lock(normalized)
            extra_ms = self._screen(normalized, ctx, sending=False)
            outcome = self.verification.verify_code(normalized, code, ip=ctx.ip, lock_checked=True)
            if not outcome.success:
                raise AuthError(ErrorCode.CODE_MISMATCH, remaining_attempts=outcome.remaining_attempts)
            result = self._login(normalized)
            self._audit("verify_code", ctx, True, normalized, user_id=result.user_id, new_user=result.is_new_user)
            return result
        except AuthError as e:
            if e.code == ErrorCode.ACCOUNT_LOCKED:
                # locked phones are answered immediately
                shaped = False
            self._audit("verify_code", ctx, False, normalized, error=e)
            raise
        finally:
            if shaped:
                self.delay.pad(started, extra_ms, ctx.cancel)

    def _login(self, phone: Phone) -> LoginResult:
        now = self.clock()
        user = retry_transient(lambda: self.users.find_by_phone(phone.e164), what="user store")
        is_new = False
        if user is None:
            if not self.allow_registration:
                raise AuthError(ErrorCode.USER_NOT_FOUND)
            user = retry_transient(lambda: self.users.create(phone.e164, now), what="user store")
            is_new = True
            logger.info(f"Registered new user {user.id} for {phone.masked}")
        retry_transient(lambda: self.users.update_last_login(user.id, now), what="user store")
        pair = self.tokens.issue(user.id, user.user_type, True)
        requires_type = not user.has_type and (is_new or self.require_immediate_user_type)
        return LoginResult(
            tokens=pair,
            user_id=user.id,
            user_type=user.user_type.value if user.has_type else None,
            requires_type_selection=requires_type,
            is_new_user=is_new,
        )

    def select_user_type(self, user_id: str, user_type: str, ctx: Optional[RequestContext] = None) -> UserType:
        ctx = ctx or RequestContext()
        try:
            try:
                chosen = UserType((user_type or "").strip().lower())
            except ValueError:
                raise AuthError(ErrorCode.INVALID_USER_TYPE) from None
            if chosen == UserType.UNSET:
                raise AuthError(ErrorCode.INVALID_USER_TYPE)
            user = retry_transient(lambda: self.users.get_by_id(user_id), what="user store")
            if user is None:
                raise AuthError(ErrorCode.USER_NOT_FOUND)
            if not retry_transient(lambda: self.users.update_user_type(user_id, chosen), what="user store"):
                raise AuthError(ErrorCode.USER_TYPE_ALREADY_SELECTED)
        except AuthError as e:
            self._audit("select_type", ctx, False, user_id=user_id, error=e)
            raise
        self._audit("select_type", ctx, True, user_id=user_id, user_type=chosen.value)
        return chosen

    def refresh(self, refresh_token: str, ctx: Optional[RequestContext] = None) -> TokenPair:
        ctx = ctx or RequestContext()
        try:
            pair = self.tokens.refresh(refresh_token)
        except AuthError as e:
            self._audit("refresh", ctx, False, error=e)
            raise
        self._audit("refresh", ctx, True)
        return pair

    def logout(self, user_id: str, ctx: Optional[RequestContext] = None) -> int:
        ctx = ctx or RequestContext()
        try:
            revoked = self.tokens.revoke_all(user_id)
        except AuthError as e:
            self._audit("logout", ctx, False, user_id=user_id, error=e)
            raise
        self._audit("logout", ctx, True, user_id=user_id, revoked=revoked)
        return revoked
