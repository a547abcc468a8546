"""Data access for users and fields."""

from typing import List

from sqlalchemy.orm import Session

from ..core.enums import UserRole
from ..models.field import Field
from ..models.user import User
from .base_repository import BaseRepository


class UserRepository(BaseRepository[User]):
    def __init__(self, db: Session):
        super().__init__(db, User)

    def get_admins(self) -> List[User]:
        return self.find_by(role=UserRole.ADMIN.value)


class FieldRepository(BaseRepository[Field]):
    def __init__(self, db: Session):
        super().__init__(db, Field)

    def get_for_owner(self, owner_id: str) -> List[Field]:
        return self.db.query(Field).filter(Field.owner_id == owner_id).order_by(Field.name).all()
