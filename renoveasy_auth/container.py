# renoveasy_auth/container.py
"""Wires settings into concrete adapters and services.

Nothing here is a module-level singleton: `build_container` returns a fresh
object graph, and the FastAPI app keeps the one it built on `app.state`.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import redis
from sqlalchemy.engine import Engine

from .application.ports.audit_logger import AuditLogger
from .application.ports.cache import Cache
from .application.ports.otp_store import OtpStore
from .application.ports.rate_limiter import RateLimiter
from .application.ports.sms_provider import SmsProvider
from .application.services.account_lock import AccountLock
from .application.services.attack_detector import AttackDetector, DetectorThresholds
from .application.services.auth_service import AuthService
from .application.services.delay_responder import DelayResponder
from .application.services.token_cleanup import TokenCleanupService
from .application.services.token_service import TokenService
from .application.services.verification_service import VerificationService
from .core.config import Settings
from .core.key_manager import KeyManager
from .core.otp_encryption import OtpEncryption
from .core.phone import PhoneNormalizer
from .database import create_engine_from_settings
from .infrastructure.audit.noop_logger import NoopAuditLogger
from .infrastructure.audit.sql_audit_logger import SqlAuditLogger
from .infrastructure.audit.std_logger import StdAuditLogger
from .infrastructure.cache.circuit_breaker import CircuitBreaker
from .infrastructure.cache.fallback_cache import FallbackCache
from .infrastructure.cache.fallback_otp_store import FallbackOtpStore
from .infrastructure.cache.memory_cache import InMemoryCache
from .infrastructure.cache.memory_otp_store import InMemoryOtpStore
from .infrastructure.cache.redis_cache import RedisCache
from .infrastructure.cache.redis_otp_store import RedisOtpStore
from .infrastructure.cache.sql_otp_store import SqlOtpStore
from .infrastructure.persistence.sqlalchemy.repositories.token_repository_sql import SqlTokenRepository
from .infrastructure.persistence.sqlalchemy.repositories.user_repository_sql import SqlUserRepository
from .infrastructure.rate_limit.fallback_rate_limiter import FallbackRateLimiter
from .infrastructure.rate_limit.memory_rate_limiter import InMemoryRateLimiter
from .infrastructure.rate_limit.redis_rate_limiter import RedisRateLimiter
from .infrastructure.sms.aws_sns_provider import AwsSnsSmsProvider
from .infrastructure.sms.failover_provider import FailoverSmsProvider
from .infrastructure.sms.mock_provider import MockSmsProvider
from .infrastructure.sms.twilio_provider import TwilioSmsProvider
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class AuthContainer:
    settings: Settings
    engine: Engine
    redis: Optional["redis.Redis"]
    keys: KeyManager
    otp_store: OtpStore
    sms: SmsProvider
    tokens: TokenService
    auth_service: AuthService
    cleanup: TokenCleanupService


def create_redis_client(settings: Settings) -> "redis.Redis":
    timeout = settings.CACHE_TIMEOUT_MS / 1000.0
    pool = redis.ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )
    return redis.Redis(connection_pool=pool)


def build_sms_provider(name: str, settings: Settings) -> SmsProvider:
    name = (name or "mock").lower()
    if name == "mock":
        if settings.is_production:
            logger.warning("Mock SMS provider configured in production; codes will not be delivered")
        return MockSmsProvider()
    if name == "twilio":
        return TwilioSmsProvider(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_PHONE_NUMBER,
            expiry_minutes=settings.OTP_EXPIRATION_MINUTES,
            timeout=settings.SMS_TIMEOUT_SECONDS,
        )
    if name in ("aws-sns", "aws_sns", "sns"):
        return AwsSnsSmsProvider(
            region=settings.AWS_REGION,
            access_key_id=settings.AWS_ACCESS_KEY_ID,
            secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            sender_id=settings.AWS_SNS_SENDER_ID,
            expiry_minutes=settings.OTP_EXPIRATION_MINUTES,
            timeout=settings.SMS_TIMEOUT_SECONDS,
        )
    raise ValueError(f"Unknown SMS provider: {name}")


def build_audit_logger(settings: Settings, engine: Engine) -> AuditLogger:
    backend = settings.AUDIT_BACKEND.lower()
    if backend == "sql":
        return SqlAuditLogger(engine)
    if backend == "log":
        return StdAuditLogger()
    if backend == "noop":
        if settings.is_production:
            raise RuntimeError("AUDIT_BACKEND=noop is not allowed in production")
        return NoopAuditLogger()
    raise ValueError(f"Unknown audit backend: {backend}")


def build_container(
    settings: Settings,
    *,
    engine: Optional[Engine] = None,
    redis_client: Optional["redis.Redis"] = None,
    sms: Optional[SmsProvider] = None,
    keys: Optional[KeyManager] = None,
    clock: Callable[[], datetime] = utcnow,
) -> AuthContainer:
    engine = engine or create_engine_from_settings(settings)
    if redis_client is None and settings.REDIS_URL:
        redis_client = create_redis_client(settings)
    keys = keys or KeyManager.from_settings(settings, clock=clock)

    sql_otp_store: Optional[SqlOtpStore] = None
    cache: Cache
    otp_store: OtpStore
    phone_limiter: RateLimiter
    ip_limiter: RateLimiter
    if redis_client is not None:
        # one breaker so every Redis consumer agrees on whether Redis is up
        breaker = CircuitBreaker(
            "redis",
            max_failures=settings.CACHE_BREAKER_FAILURES,
            window=settings.CACHE_BREAKER_WINDOW_SECONDS,
            cooldown=settings.CACHE_BREAKER_COOLDOWN_SECONDS,
        )
        cache = FallbackCache(RedisCache(redis_client), InMemoryCache(clock=clock), breaker)
        sql_otp_store = SqlOtpStore(engine, clock=clock)
        otp_store = FallbackOtpStore(
            RedisOtpStore(redis_client, clock=clock), sql_otp_store, breaker, policy=settings.OTP_FALLBACK_POLICY,
            clock=clock,
        )
        phone_limiter = FallbackRateLimiter(
            RedisRateLimiter(redis_client, settings.RATE_LIMIT_MAX_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS,
                             prefix="rl:phone:", clock=clock),
            InMemoryRateLimiter(settings.RATE_LIMIT_MAX_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS, clock=clock),
            breaker,
        )
        ip_limiter = FallbackRateLimiter(
            RedisRateLimiter(redis_client, settings.IP_RATE_LIMIT_MAX_REQUESTS, settings.IP_RATE_LIMIT_WINDOW_SECONDS,
                             prefix="rl:ip:", clock=clock),
            InMemoryRateLimiter(settings.IP_RATE_LIMIT_MAX_REQUESTS, settings.IP_RATE_LIMIT_WINDOW_SECONDS, clock=clock),
            breaker,
        )
    else:
        logger.warning("REDIS_URL not set; using in-process cache, OTP store and rate limiters")
        cache = InMemoryCache(clock=clock)
        otp_store = InMemoryOtpStore(clock=clock)
        phone_limiter = InMemoryRateLimiter(settings.RATE_LIMIT_MAX_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS, clock=clock)
        ip_limiter = InMemoryRateLimiter(settings.IP_RATE_LIMIT_MAX_REQUESTS, settings.IP_RATE_LIMIT_WINDOW_SECONDS, clock=clock)

    if sms is None:
        sms = build_sms_provider(settings.SMS_PROVIDER, settings)
        if settings.SMS_BACKUP_PROVIDER:
            sms = FailoverSmsProvider(
                sms, build_sms_provider(settings.SMS_BACKUP_PROVIDER, settings), settings.SMS_FAILOVER_RETRY_SECONDS
            )

    users = SqlUserRepository(engine)
    token_repo = SqlTokenRepository(engine)
    account_lock = AccountLock(
        cache, settings.ACCOUNT_LOCK_THRESHOLDS, state_ttl_seconds=settings.ACCOUNT_LOCK_STATE_TTL_SECONDS, clock=clock
    )
    detector = AttackDetector(
        DetectorThresholds(
            stuffing_phones=settings.ATTACK_STUFFING_PHONES,
            stuffing_window=settings.ATTACK_STUFFING_WINDOW_SECONDS,
            brute_failures=settings.ATTACK_BRUTE_FAILURES,
            brute_window=settings.ATTACK_BRUTE_WINDOW_SECONDS,
            distributed_failures=settings.ATTACK_DISTRIBUTED_FAILURES,
            distributed_ips=settings.ATTACK_DISTRIBUTED_IPS,
            distributed_window=settings.ATTACK_DISTRIBUTED_WINDOW_SECONDS,
            enumeration_phones=settings.ATTACK_ENUMERATION_PHONES,
            enumeration_window=settings.ATTACK_ENUMERATION_WINDOW_SECONDS,
        ),
        clock=clock,
    )
    verification = VerificationService(
        store=otp_store,
        encryption=OtpEncryption(keys),
        rate_limiter=phone_limiter,
        sms=sms,
        account_lock=account_lock,
        detector=detector,
        cache=cache,
        expiration_minutes=settings.OTP_EXPIRATION_MINUTES,
        max_attempts=settings.OTP_MAX_ATTEMPTS,
        resend_cooldown_seconds=settings.RESEND_COOLDOWN_SECONDS,
        enforce_resend_cooldown=settings.ENFORCE_RESEND_COOLDOWN,
        clock=clock,
    )
    tokens = TokenService(
        repo=token_repo,
        users=users,
        keys=keys,
        issuer=settings.JWT_ISSUER,
        audience=settings.JWT_AUDIENCE,
        access_ttl_seconds=settings.ACCESS_TOKEN_EXPIRY_SECONDS,
        refresh_ttl_seconds=settings.REFRESH_TOKEN_EXPIRY_SECONDS,
        clock=clock,
    )
    auth_service = AuthService(
        normalizer=PhoneNormalizer(),
        verification=verification,
        tokens=tokens,
        users=users,
        account_lock=account_lock,
        detector=detector,
        delay=DelayResponder(settings.DELAY_BASE_MS, settings.DELAY_VARIANCE_MS),
        audit=build_audit_logger(settings, engine),
        ip_limiter=ip_limiter,
        slow_penalty_ms=settings.ATTACK_SLOW_PENALTY_MS,
        allow_registration=settings.ALLOW_REGISTRATION,
        require_immediate_user_type=settings.REQUIRE_IMMEDIATE_USER_TYPE,
        clock=clock,
    )
    cleanup = TokenCleanupService(
        repo=token_repo,
        otp_purger=sql_otp_store,
        interval_seconds=settings.CLEANUP_INTERVAL_SECONDS,
        grace_seconds=settings.CLEANUP_GRACE_SECONDS,
        batch_size=settings.CLEANUP_BATCH_SIZE,
        lease_seconds=settings.CLEANUP_LEASE_SECONDS,
        clock=clock,
    )
    return AuthContainer(
        settings=settings,
        engine=engine,
        redis=redis_client,
        keys=keys,
        otp_store=otp_store,
        sms=sms,
        tokens=tokens,
        auth_service=auth_service,
        cleanup=cleanup,
    )
