import hashlib
import logging
import random
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Tuple, Type, TypeVar

import redis
from sqlalchemy.exc import OperationalError, TimeoutError as SqlTimeoutError, DisconnectionError

from .exceptions import AuthError, ErrorCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors worth a single retry before the request gives up with STORAGE_UNAVAILABLE
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (
    OperationalError,
    SqlTimeoutError,
    DisconnectionError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the tables store datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =========================
# OTP Generation
# =========================
def generate_otp() -> str:
    """Generate a 6-digit OTP, uniform over 000000..999999."""
    return f"{secrets.randbelow(1_000_000):06d}"


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store refresh tokens at rest"""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(32)


def generate_jti() -> str:
    return str(uuid.uuid4())


def retry_transient(fn: Callable[[], T], *, what: str = "storage", jitter_ms: int = 50) -> T:
    """Run `fn`, retrying once after a short random pause on a transient backend error.

    A second failure is reported to the caller as STORAGE_UNAVAILABLE.
    """
    try:
        return fn()
    except TRANSIENT_ERRORS as e:
        logger.warning(f"Transient {what} error, retrying once: {e}")
        time.sleep(random.uniform(0, jitter_ms) / 1000.0)
    try:
        return fn()
    except TRANSIENT_ERRORS as e:
        logger.error(f"{what} unavailable after retry: {e}")
        raise AuthError(ErrorCode.STORAGE_UNAVAILABLE) from e


def epoch_ms(dt: datetime) -> int:
    """Milliseconds since the epoch for a naive-UTC datetime."""
    return int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000)
