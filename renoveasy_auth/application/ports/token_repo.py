from typing import List, Optional, Protocol
from dataclasses import dataclass
from datetime import datetime


@dataclass
class RefreshRecord:
    token_hash: str
    user_id: str
    jti: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    access_expires_at: datetime
    revoked: bool = False
    # rotated | logout | family_revoked
    revoked_reason: Optional[str] = None


class TokenRepository(Protocol):
    def insert_refresh(self, record: RefreshRecord) -> None:
        ...

    def find_refresh_by_hash(self, token_hash: str) -> Optional[RefreshRecord]:
        ...

    def revoke_refresh(self, token_hash: str, reason: str = "rotated") -> bool:
        """Compare-and-set on the revoked flag; True only for the caller that flipped it."""
        ...

    def revoke_family(self, family_id: str) -> List[RefreshRecord]:
        """Revoke every live token of the family and return the ones that were live."""
        ...

    def revoke_all_for_user(self, user_id: str) -> List[RefreshRecord]:
        """Revoke every token of the user (reason logout) and return the ones that were live."""
        ...

    def insert_revoked_jti(self, jti: str, expires_at: datetime) -> None:
        ...

    def is_jti_revoked(self, jti: str, now: datetime) -> bool:
        ...

    def purge_expired(self, before: datetime, limit: int) -> int:
        """Delete up to `limit` refresh tokens that expired before `before`."""
        ...

    def purge_revoked_jti(self, now: datetime, limit: int) -> int:
        ...

    def try_acquire_lease(self, name: str, holder: str, now: datetime, ttl_seconds: int) -> bool:
        ...

    def release_lease(self, name: str, holder: str) -> None:
        ...
