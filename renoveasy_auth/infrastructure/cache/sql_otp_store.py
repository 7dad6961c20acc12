from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from ...application.ports.otp_store import EXPIRED_RETENTION, OtpStore
from ...core.otp_encryption import EncryptedOtp
from ...db.models import OtpFallback
from ...utils import utcnow


class SqlOtpStore(OtpStore):
    """OTP records in the `otp_fallback` table; the phone primary key keeps one row per phone."""

    backend = "database"

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def _to_otp(self, row: OtpFallback) -> EncryptedOtp:
        return EncryptedOtp(
            phone=row.phone,
            ciphertext=row.ciphertext,
            nonce=row.nonce,
            tag=row.tag,
            key_version=row.key_version,
            created_at=row.created_at,
            expires_at=row.expires_at,
            attempt_count=row.attempts,
            backend=self.backend,
        )

    def store(self, otp: EncryptedOtp) -> None:
        with Session(self.engine) as session:
            row = session.get(OtpFallback, otp.phone)
            if row is None:
                row = OtpFallback(phone=otp.phone, ciphertext=otp.ciphertext, nonce=otp.nonce, tag=otp.tag,
                                  key_version=otp.key_version, attempts=otp.attempt_count,
                                  created_at=otp.created_at, expires_at=otp.expires_at)
            else:
                row.ciphertext = otp.ciphertext
                row.nonce = otp.nonce
                row.tag = otp.tag
                row.key_version = otp.key_version
                row.attempts = otp.attempt_count
                row.created_at = otp.created_at
                row.expires_at = otp.expires_at
            session.add(row)
            session.commit()

    def get(self, phone: str) -> Optional[EncryptedOtp]:
        with Session(self.engine) as session:
            row = session.exec(
                select(OtpFallback).where(OtpFallback.phone == phone,
                                          OtpFallback.expires_at > self._clock() - EXPIRED_RETENTION)
            ).first()
            return self._to_otp(row) if row else None

    def increment_attempt(self, phone: str) -> int:
        now = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(OtpFallback)
                .where(OtpFallback.phone == phone, OtpFallback.expires_at > now)
                .values(attempts=OtpFallback.attempts + 1)
            )
            if result.rowcount != 1:
                return 0
            return int(conn.execute(
                select(OtpFallback.attempts).where(OtpFallback.phone == phone)
            ).scalar_one())

    def reserve_attempt(self, phone: str, max_attempts: int) -> int:
        now = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(OtpFallback)
                .where(OtpFallback.phone == phone, OtpFallback.expires_at > now,
                       OtpFallback.attempts < max_attempts)
                .values(attempts=OtpFallback.attempts + 1)
            )
            if result.rowcount != 1:
                return 0
            return int(conn.execute(
                select(OtpFallback.attempts).where(OtpFallback.phone == phone)
            ).scalar_one())

    def consume(self, phone: str, nonce: bytes) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(OtpFallback).where(OtpFallback.phone == phone, OtpFallback.nonce == nonce)
            )
            return result.rowcount == 1

    def clear(self, phone: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(OtpFallback).where(OtpFallback.phone == phone))

    def ttl(self, phone: str) -> Optional[int]:
        otp = self.get(phone)
        if otp is None or otp.expires_at <= self._clock():
            return None
        return int((otp.expires_at - self._clock()).total_seconds())

    def exists(self, phone: str) -> bool:
        return self.ttl(phone) is not None

    def ping(self) -> bool:
        return True

    def purge_expired(self, now: datetime, limit: int) -> int:
        """Delete up to `limit` rows whose retention has run out."""
        batch = select(OtpFallback.phone).where(OtpFallback.expires_at <= now - EXPIRED_RETENTION).limit(limit)
        with self.engine.begin() as conn:
            return conn.execute(delete(OtpFallback).where(OtpFallback.phone.in_(batch))).rowcount
