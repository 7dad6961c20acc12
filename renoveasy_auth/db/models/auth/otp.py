# renoveasy_auth/db/models/auth/otp.py
from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field
from datetime import datetime


class OtpFallback(SQLModel, table=True):
    """Encrypted OTP rows used while Redis is unavailable (or mirrored alongside it)."""
    __tablename__ = "otp_fallback"
    phone: str = Field(primary_key=True, max_length=20)
    ciphertext: bytes
    nonce: bytes
    tag: bytes
    key_version: int
    attempts: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False, index=True))
