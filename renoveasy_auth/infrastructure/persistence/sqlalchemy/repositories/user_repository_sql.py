from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .....db.models import User
from .....application.ports.user_repo import UserRepository, UserDto, UserType


class SqlUserRepository(UserRepository):
    def __init__(self, engine: Engine):
        self.engine = engine

    def _to_dto(self, user: User) -> UserDto:
        return UserDto(
            id=user.id,
            phone=user.phone,
            user_type=UserType(user.user_type),
            is_verified=bool(user.is_verified),
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )

    def find_by_phone(self, phone: str) -> Optional[UserDto]:
        with Session(self.engine) as session:
            user = session.exec(select(User).where(User.phone == phone)).first()
            return self._to_dto(user) if user else None

    def get_by_id(self, user_id: str) -> Optional[UserDto]:
        with Session(self.engine) as session:
            user = session.get(User, user_id)
            return self._to_dto(user) if user else None

    def create(self, phone: str, created_at: datetime) -> UserDto:
        with Session(self.engine) as session:
            user = User(phone=phone, user_type=UserType.UNSET.value, is_verified=True, created_at=created_at)
            session.add(user)
            try:
                session.commit()
            except IntegrityError:
                # lost a race with a concurrent first login for the same phone
                session.rollback()
                existing = session.exec(select(User).where(User.phone == phone)).one()
                return self._to_dto(existing)
            session.refresh(user)
            return self._to_dto(user)

    def update_user_type(self, user_id: str, user_type: UserType) -> bool:
        stmt = (
            update(User)
            .where(User.id == user_id, User.user_type == UserType.UNSET.value)
            .values(user_type=user_type.value)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def update_last_login(self, user_id: str, timestamp: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(update(User).where(User.id == user_id).values(last_login_at=timestamp, is_verified=True))
