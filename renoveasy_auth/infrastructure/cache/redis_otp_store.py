import logging
from datetime import datetime
from typing import Callable, Optional

import redis

from ...application.ports.otp_store import EXPIRED_RETENTION, OtpStore
from ...core.otp_encryption import EncryptedOtp
from ...utils import epoch_ms, utcnow

logger = logging.getLogger(__name__)

# Only bump the counter of a record that is still live; HINCRBY would otherwise
# resurrect a vanished key as a bare counter.
_INCREMENT_IF_LIVE = """
local exp = redis.call('HGET', KEYS[1], 'exp_ms')
if exp and tonumber(exp) > tonumber(ARGV[1]) then
  return redis.call('HINCRBY', KEYS[1], 'attempts', 1)
end
return 0
"""

_RESERVE_IF_LIVE = """
local exp = redis.call('HGET', KEYS[1], 'exp_ms')
if not exp or tonumber(exp) <= tonumber(ARGV[1]) then
  return 0
end
local n = tonumber(redis.call('HGET', KEYS[1], 'attempts') or '0')
if n >= tonumber(ARGV[2]) then
  return 0
end
return redis.call('HINCRBY', KEYS[1], 'attempts', 1)
"""

_CONSUME_IF_SAME = """
if redis.call('HGET', KEYS[1], 'nonce') == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisOtpStore(OtpStore):
    backend = "redis"

    def __init__(self, client: "redis.Redis", prefix: str = "otp:", clock: Callable[[], datetime] = utcnow) -> None:
        self.client = client
        self.prefix = prefix
        self._clock = clock
        self._increment = self.client.register_script(_INCREMENT_IF_LIVE)
        self._reserve = self.client.register_script(_RESERVE_IF_LIVE)
        self._consume = self.client.register_script(_CONSUME_IF_SAME)

    def _k(self, phone: str) -> str:
        return f"{self.prefix}{phone}"

    def store(self, otp: EncryptedOtp) -> None:
        ttl_ms = int((otp.expires_at - self._clock()).total_seconds() * 1000)
        key = self._k(otp.phone)
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(key)
        if ttl_ms > 0:
            pipe.hset(key, mapping={
                "ct": otp.ciphertext,
                "nonce": otp.nonce,
                "tag": otp.tag,
                "kv": otp.key_version,
                "created": otp.created_at.isoformat(),
                "expires": otp.expires_at.isoformat(),
                "attempts": otp.attempt_count,
                "exp_ms": epoch_ms(otp.expires_at),
            })
            # kept past expiry so a late verify reads as expired, not missing
            pipe.pexpire(key, ttl_ms + int(EXPIRED_RETENTION.total_seconds() * 1000))
        pipe.execute()

    def get(self, phone: str) -> Optional[EncryptedOtp]:
        raw = self.client.hgetall(self._k(phone))
        if not raw:
            return None
        data = {(k.decode() if isinstance(k, bytes) else k): v for k, v in raw.items()}
        if "ct" not in data:
            return None
        return EncryptedOtp(
            phone=phone,
            ciphertext=data["ct"],
            nonce=data["nonce"],
            tag=data["tag"],
            key_version=int(data["kv"]),
            created_at=datetime.fromisoformat(data["created"].decode()),
            expires_at=datetime.fromisoformat(data["expires"].decode()),
            attempt_count=int(data.get("attempts", 0)),
            backend=self.backend,
        )

    def increment_attempt(self, phone: str) -> int:
        return int(self._increment(keys=[self._k(phone)], args=[epoch_ms(self._clock())]))

    def reserve_attempt(self, phone: str, max_attempts: int) -> int:
        return int(self._reserve(keys=[self._k(phone)], args=[epoch_ms(self._clock()), max_attempts]))

    def consume(self, phone: str, nonce: bytes) -> bool:
        return int(self._consume(keys=[self._k(phone)], args=[nonce])) == 1

    def clear(self, phone: str) -> None:
        self.client.delete(self._k(phone))

    def ttl(self, phone: str) -> Optional[int]:
        otp = self.get(phone)
        if otp is None or otp.expires_at <= self._clock():
            return None
        return int((otp.expires_at - self._clock()).total_seconds())

    def exists(self, phone: str) -> bool:
        return self.ttl(phone) is not None

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.exceptions.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False
