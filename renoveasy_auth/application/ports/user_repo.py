from enum import Enum
from typing import Protocol, Optional
from datetime import datetime


class UserType(str, Enum):
    CUSTOMER = "customer"
    WORKER = "worker"
    UNSET = "unset"


class UserDto:
    def __init__(self, id: str, phone: str, user_type: UserType, is_verified: bool,
                 created_at: datetime, last_login_at: Optional[datetime]):
        self.id = id
        self.phone = phone
        self.user_type = user_type
        self.is_verified = is_verified
        self.created_at = created_at
        self.last_login_at = last_login_at

    @property
    def has_type(self) -> bool:
        return self.user_type != UserType.UNSET


class UserRepository(Protocol):
    def find_by_phone(self, phone: str) -> Optional[UserDto]:
        ...

    def get_by_id(self, user_id: str) -> Optional[UserDto]:
        ...

    def create(self, phone: str, created_at: datetime) -> UserDto:
        ...

    def update_user_type(self, user_id: str, user_type: UserType) -> bool:
        """Set the type only while it is still unset; returns False when it was already chosen."""
        ...

    def update_last_login(self, user_id: str, timestamp: datetime) -> None:
        ...
