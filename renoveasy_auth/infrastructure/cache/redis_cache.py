from typing import Optional

import redis

from ...application.ports.cache import Cache

# INCR and arm the TTL on first use so the key cannot outlive its window
_INCR_WITH_TTL = """
local n = redis.call('INCR', KEYS[1])
if n == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return n
"""


class RedisCache(Cache):
    def __init__(self, client: "redis.Redis", prefix: str = "auth:") -> None:
        self.client = client
        self.prefix = prefix
        self._incr = self.client.register_script(_INCR_WITH_TTL)

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str) -> Optional[str]:
        value = self.client.get(self._k(key))
        if value is None:
            return None
        return value.decode() if isinstance(value, bytes) else str(value)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(self._k(key), value, ex=max(int(ttl_seconds), 1))

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(self.client.set(self._k(key), value, ex=max(int(ttl_seconds), 1), nx=True))

    def incr(self, key: str, ttl_seconds: int) -> int:
        return int(self._incr(keys=[self._k(key)], args=[max(int(ttl_seconds), 1)]))

    def delete(self, key: str) -> None:
        self.client.delete(self._k(key))
