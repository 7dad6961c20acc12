from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .....db.models import RefreshToken, RevokedJti, MaintenanceLease
from .....application.ports.token_repo import TokenRepository, RefreshRecord


class SqlTokenRepository(TokenRepository):
    def __init__(self, engine: Engine):
        self.engine = engine

    def _to_record(self, row: RefreshToken) -> RefreshRecord:
        return RefreshRecord(
            token_hash=row.hash,
            user_id=row.user_id,
            jti=row.jti,
            family_id=row.family_id,
            issued_at=row.issued_at,
            expires_at=row.expires_at,
            access_expires_at=row.access_expires_at,
            revoked=bool(row.revoked),
            revoked_reason=row.revoked_reason,
        )

    def insert_refresh(self, record: RefreshRecord) -> None:
        with Session(self.engine) as session:
            session.add(RefreshToken(
                hash=record.token_hash,
                user_id=record.user_id,
                jti=record.jti,
                family_id=record.family_id,
                issued_at=record.issued_at,
                expires_at=record.expires_at,
                access_expires_at=record.access_expires_at,
                revoked=record.revoked,
                revoked_reason=record.revoked_reason,
            ))
            session.commit()

    def find_refresh_by_hash(self, token_hash: str) -> Optional[RefreshRecord]:
        with Session(self.engine) as session:
            row = session.get(RefreshToken, token_hash)
            return self._to_record(row) if row else None

    def revoke_refresh(self, token_hash: str, reason: str = "rotated") -> bool:
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.hash == token_hash, RefreshToken.revoked == False)  # noqa: E712
            .values(revoked=True, revoked_reason=reason)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def _revoke_where(self, condition, reason: str, overwrite_reason: bool) -> List[RefreshRecord]:
        with Session(self.engine) as session:
            live = [
                self._to_record(r)
                for r in session.exec(select(RefreshToken).where(condition, RefreshToken.revoked == False))  # noqa: E712
            ]
        with self.engine.begin() as conn:
            conn.execute(
                update(RefreshToken)
                .where(condition, RefreshToken.revoked == False)  # noqa: E712
                .values(revoked=True, revoked_reason=reason)
            )
            if overwrite_reason:
                conn.execute(update(RefreshToken).where(condition).values(revoked_reason=reason))
        return live

    def revoke_family(self, family_id: str) -> List[RefreshRecord]:
        return self._revoke_where(RefreshToken.family_id == family_id, "family_revoked", overwrite_reason=False)

    def revoke_all_for_user(self, user_id: str) -> List[RefreshRecord]:
        # every earlier token of the user now reads as logged out
        return self._revoke_where(RefreshToken.user_id == user_id, "logout", overwrite_reason=True)

    def insert_revoked_jti(self, jti: str, expires_at: datetime) -> None:
        with Session(self.engine) as session:
            existing = session.get(RevokedJti, jti)
            if existing:
                existing.expires_at = max(existing.expires_at, expires_at)
                session.add(existing)
            else:
                session.add(RevokedJti(jti=jti, expires_at=expires_at))
            session.commit()

    def is_jti_revoked(self, jti: str, now: datetime) -> bool:
        with Session(self.engine) as session:
            row = session.get(RevokedJti, jti)
            return bool(row and row.expires_at > now)

    def purge_expired(self, before: datetime, limit: int) -> int:
        batch = select(RefreshToken.hash).where(RefreshToken.expires_at < before).limit(limit)
        with self.engine.begin() as conn:
            return conn.execute(delete(RefreshToken).where(RefreshToken.hash.in_(batch))).rowcount

    def purge_revoked_jti(self, now: datetime, limit: int) -> int:
        batch = select(RevokedJti.jti).where(RevokedJti.expires_at <= now).limit(limit)
        with self.engine.begin() as conn:
            return conn.execute(delete(RevokedJti).where(RevokedJti.jti.in_(batch))).rowcount

    def try_acquire_lease(self, name: str, holder: str, now: datetime, ttl_seconds: int) -> bool:
        expires_at = now + timedelta(seconds=ttl_seconds)
        stmt = (
            update(MaintenanceLease)
            .where(MaintenanceLease.name == name)
            .where((MaintenanceLease.holder == holder) | (MaintenanceLease.expires_at < now))
            .values(holder=holder, expires_at=expires_at)
        )
        with self.engine.begin() as conn:
            if conn.execute(stmt).rowcount == 1:
                return True
        with Session(self.engine) as session:
            if session.get(MaintenanceLease, name) is not None:
                return False
            session.add(MaintenanceLease(name=name, holder=holder, expires_at=expires_at))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def release_lease(self, name: str, holder: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                delete(MaintenanceLease).where(MaintenanceLease.name == name, MaintenanceLease.holder == holder)
            )
