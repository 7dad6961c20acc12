# renoveasy_auth/db/models/users/user.py
from typing import Optional
from sqlalchemy import Column, DateTime
from sqlmodel import SQLModel, Field
from datetime import datetime
import uuid

from ....utils import utcnow


class User(SQLModel, table=True):
    __tablename__ = "users"
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    phone: str = Field(max_length=20, unique=True, index=True)
    user_type: str = Field(default="unset", max_length=10)
    is_verified: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(DateTime, nullable=False))
    last_login_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
