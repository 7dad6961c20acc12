# renoveasy_auth/db/models/auth/token.py
from typing import Optional
from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field
from datetime import datetime


class RefreshToken(SQLModel, table=True):
    __tablename__ = "refresh_tokens"
    hash: str = Field(primary_key=True, max_length=64)
    user_id: str = Field(index=True, max_length=36)
    jti: str = Field(max_length=36)
    family_id: str = Field(index=True, max_length=36)
    issued_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False, index=True))
    access_expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    revoked: bool = Field(default=False)
    revoked_reason: Optional[str] = Field(default=None, max_length=20)


class RevokedJti(SQLModel, table=True):
    __tablename__ = "revoked_jti"
    jti: str = Field(primary_key=True, max_length=36)
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False, index=True))


class MaintenanceLease(SQLModel, table=True):
    """Single-row advisory lock so only one replica runs a periodic job."""
    __tablename__ = "maintenance_leases"
    name: str = Field(primary_key=True, max_length=50)
    holder: str = Field(max_length=64)
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
