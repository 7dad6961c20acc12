import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import jwt

from ..ports.token_repo import RefreshRecord, TokenRepository
from ..ports.user_repo import UserRepository, UserType
from ...core.key_manager import KeyManager
from ...exceptions import AuthError, ErrorCode
from ...utils import epoch_ms, generate_jti, generate_refresh_token, hash_token, retry_transient, utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "RS256"
# tolerated clock skew between replicas for `iat`
IAT_LEEWAY_SECONDS = 30


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    access_jti: str
    refresh_expires_at: datetime
    token_type: str = "Bearer"


@dataclass
class AccessClaims:
    sub: str
    jti: str
    user_type: Optional[str]
    is_verified: bool
    iat: int
    exp: int


def _epoch(dt: datetime) -> int:
    return epoch_ms(dt) // 1000


@dataclass
class TokenService:
    repo: TokenRepository
    users: UserRepository
    keys: KeyManager
    issuer: str = "renov-easy"
    audience: str = "renov-easy-api"
    access_ttl_seconds: int = 900
    refresh_ttl_seconds: int = 2_592_000
    clock: Callable[[], datetime] = utcnow

    def issue(self, user_id: str, user_type: UserType, is_verified: bool,
              family_id: Optional[str] = None) -> TokenPair:
        now = self.clock().replace(microsecond=0)
        access_exp = now + timedelta(seconds=self.access_ttl_seconds)
        jti = generate_jti()
        claims = {
            "sub": user_id,
            "jti": jti,
            "user_type": None if user_type == UserType.UNSET else user_type.value,
            "is_verified": is_verified,
            "iat": _epoch(now),
            "exp": _epoch(access_exp),
            "iss": self.issuer,
            "aud": self.audience,
            "typ": "access",
        }
        access = jwt.encode(claims, self.keys.jwt_private_pem, algorithm=ALGORITHM, headers={"kid": self.keys.jwt_kid})

        refresh = generate_refresh_token()
        record = RefreshRecord(
            token_hash=hash_token(refresh),
            user_id=user_id,
            jti=jti,
            family_id=family_id or str(uuid.uuid4()),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.refresh_ttl_seconds),
            access_expires_at=access_exp,
        )
        retry_transient(lambda: self.repo.insert_refresh(record), what="token store")
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self.access_ttl_seconds,
            access_jti=jti,
            refresh_expires_at=record.expires_at,
        )

    def verify_access(self, token: str) -> AccessClaims:
        try:
            payload = jwt.decode(
                token,
                self.keys.jwt_public_pem,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                # exp and iat are checked against the service clock below
                options={"verify_exp": False, "verify_iat": False, "require": ["sub", "jti", "exp", "iat"]},
            )
        except jwt.InvalidSignatureError:
            raise AuthError(ErrorCode.TOKEN_SIGNATURE_INVALID) from None
        except jwt.InvalidTokenError:
            raise AuthError(ErrorCode.TOKEN_MALFORMED) from None

        if payload.get("typ") != "access":
            raise AuthError(ErrorCode.TOKEN_MALFORMED)
        now = self.clock()
        try:
            exp = int(payload["exp"])
            iat = int(payload["iat"])
        except (TypeError, ValueError):
            raise AuthError(ErrorCode.TOKEN_MALFORMED) from None
        if iat > _epoch(now) + IAT_LEEWAY_SECONDS or iat >= exp:
            raise AuthError(ErrorCode.TOKEN_MALFORMED)
        if exp <= _epoch(now):
            raise AuthError(ErrorCode.TOKEN_EXPIRED)
        if retry_transient(lambda: self.repo.is_jti_revoked(payload["jti"], now), what="token store"):
            raise AuthError(ErrorCode.TOKEN_REVOKED)
        return AccessClaims(
            sub=payload["sub"],
            jti=payload["jti"],
            user_type=payload.get("user_type"),
            is_verified=bool(payload.get("is_verified", False)),
            iat=iat,
            exp=exp,
        )

    def _revoke_access(self, records: Iterable[RefreshRecord], now: datetime) -> None:
        for rec in records:
            if rec.access_expires_at > now:
                self.repo.insert_revoked_jti(rec.jti, rec.access_expires_at)

    def _reuse_detected(self, record: RefreshRecord, now: datetime) -> AuthError:
        live = retry_transient(lambda: self.repo.revoke_family(record.family_id), what="token store")
        self._revoke_access(live, now)
        logger.warning(f"Refresh token reuse for user {record.user_id}; family {record.family_id} revoked")
        return AuthError(ErrorCode.REFRESH_REUSE_DETECTED)

    def refresh(self, refresh_token: str) -> TokenPair:
        if not refresh_token:
            raise AuthError(ErrorCode.TOKEN_MALFORMED)
        now = self.clock()
        token_hash = hash_token(refresh_token)
        record = retry_transient(lambda: self.repo.find_refresh_by_hash(token_hash), what="token store")
        if record is None:
            raise AuthError(ErrorCode.TOKEN_MALFORMED)
        if record.revoked:
            if record.revoked_reason == "rotated":
                raise self._reuse_detected(record, now)
            raise AuthError(ErrorCode.TOKEN_REVOKED)
        if record.expires_at <= now:
            raise AuthError(ErrorCode.TOKEN_EXPIRED)

        if not retry_transient(lambda: self.repo.revoke_refresh(token_hash, "rotated"), what="token store"):
            # a concurrent refresh already redeemed this token
            raise self._reuse_detected(record, now)
        self._revoke_access([record], now)

        user = retry_transient(lambda: self.users.get_by_id(record.user_id), what="user store")
        if user is None:
            raise AuthError(ErrorCode.USER_NOT_FOUND)
        return self.issue(user.id, user.user_type, user.is_verified, family_id=record.family_id)

    def revoke_all(self, user_id: str) -> int:
        """Logout: revoke every refresh token of the user and the access tokens paired with them."""
        now = self.clock()
        live = retry_transient(lambda: self.repo.revoke_all_for_user(user_id), what="token store")
        self._revoke_access(live, now)
        logger.info(f"Revoked {len(live)} live sessions for user {user_id}")
        return len(live)
