from datetime import timedelta
from typing import Optional, Protocol

from ...core.otp_encryption import EncryptedOtp

# Expired records stay readable this long so a late verify is told CODE_EXPIRED
# rather than CODE_NOT_FOUND. Expiry itself is decided from `expires_at`.
EXPIRED_RETENTION = timedelta(minutes=10)


class OtpStore(Protocol):
    backend: str

    def store(self, otp: EncryptedOtp) -> None:
        """Save the record, replacing any record for the phone."""
        ...

    def get(self, phone: str) -> Optional[EncryptedOtp]:
        """Return the record for `phone`, possibly past `expires_at` but within EXPIRED_RETENTION."""
        ...

    def increment_attempt(self, phone: str) -> int:
        """Atomically bump the attempt counter of a live record; returns the new count or 0 when absent."""
        ...

    def reserve_attempt(self, phone: str, max_attempts: int) -> int:
        """Atomically take one guess on a live record holding fewer than `max_attempts`.

        Returns the new attempt count, or 0 when no guess is left or no live record exists.
        """
        ...

    def consume(self, phone: str, nonce: bytes) -> bool:
        """Delete the record only if it is still the one sealed with `nonce`; True when this call removed it."""
        ...

    def clear(self, phone: str) -> None:
        ...

    def ttl(self, phone: str) -> Optional[int]:
        """Seconds until `expires_at`, or None when there is no live record."""
        ...

    def exists(self, phone: str) -> bool:
        """True while a live (unexpired) record exists."""
        ...

    def ping(self) -> bool:
        ...
