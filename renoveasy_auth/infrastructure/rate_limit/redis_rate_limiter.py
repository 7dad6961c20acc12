import math
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

import redis

from ...application.ports.rate_limiter import RateLimiter, RateLimitDecision
from ...utils import epoch_ms, utcnow

# Sliding window over a sorted set scored by request time (ms).
# Returns {allowed, count, retry_after_ms}.
_ACQUIRE = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local take = ARGV[5] == '1'
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count < limit then
  if take then
    redis.call('ZADD', key, now, member)
    redis.call('PEXPIRE', key, window)
    count = count + 1
  end
  return {1, count, 0}
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return {0, count, tonumber(oldest[2]) + window - now}
"""


class RedisRateLimiter(RateLimiter):
    def __init__(self, client: "redis.Redis", max_requests: int, window_seconds: int, prefix: str = "rl:",
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.client = client
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.prefix = prefix
        self._clock = clock
        self._acquire = self.client.register_script(_ACQUIRE)

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _run(self, key: str, take: bool) -> RateLimitDecision:
        token = uuid.uuid4().hex
        allowed, count, retry_ms = self._acquire(
            keys=[self._k(key)],
            args=[epoch_ms(self._clock()), self.window_seconds * 1000, self.max_requests, token, "1" if take else "0"],
        )
        if int(allowed) == 1:
            return RateLimitDecision(allowed=True, count=int(count), token=token if take else None)
        return RateLimitDecision(allowed=False, count=int(count), retry_after=max(1, math.ceil(int(retry_ms) / 1000)))

    def check(self, key: str) -> RateLimitDecision:
        return self._run(key, take=False)

    def acquire(self, key: str) -> RateLimitDecision:
        return self._run(key, take=True)

    def increment(self, key: str) -> int:
        rk = self._k(key)
        now = epoch_ms(self._clock())
        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(rk, "-inf", now - self.window_seconds * 1000)
        pipe.zadd(rk, {uuid.uuid4().hex: now})
        pipe.pexpire(rk, self.window_seconds * 1000)
        pipe.zcard(rk)
        return int(pipe.execute()[-1])

    def release(self, key: str, token: str) -> None:
        self.client.zrem(self._k(key), token)

    def reset_at(self, key: str) -> Optional[datetime]:
        rk = self._k(key)
        now = epoch_ms(self._clock())
        self.client.zremrangebyscore(rk, "-inf", now - self.window_seconds * 1000)
        oldest = self.client.zrange(rk, 0, 0, withscores=True)
        if not oldest:
            return None
        oldest_ms = int(oldest[0][1])
        return datetime(1970, 1, 1) + timedelta(milliseconds=oldest_ms + self.window_seconds * 1000)
