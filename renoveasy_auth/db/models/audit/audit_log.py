# renoveasy_auth/db/models/audit/audit_log.py
from typing import Optional
from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field
from datetime import datetime


class AuthAuditLog(SQLModel, table=True):
    __tablename__ = "auth_audit_log"
    id: Optional[int] = Field(default=None, primary_key=True)
    event: str = Field(max_length=40, index=True)
    phone_masked: Optional[str] = Field(default=None, max_length=20)
    user_id: Optional[str] = Field(default=None, max_length=36)
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=255)
    success: bool = Field(default=True)
    details: Optional[str] = Field(default=None)
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False, index=True))
