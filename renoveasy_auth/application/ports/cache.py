from typing import Optional, Protocol


class Cache(Protocol):
    """Small TTL key/value capability shared by account lock and resend cooldown."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        ...

    def incr(self, key: str, ttl_seconds: int) -> int:
        ...

    def delete(self, key: str) -> None:
        ...
