"""Data access for checkout slot locks."""

from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.slot_lock import SlotLock
from .base_repository import BaseRepository


class SlotLockRepository(BaseRepository[SlotLock]):
    def __init__(self, db: Session):
        super().__init__(db, SlotLock)

    def get_by_key(self, field_id: str, on_date: date, start_time: str) -> Optional[SlotLock]:
        return (
            self.db.query(SlotLock)
            .filter(
                SlotLock.field_id == field_id,
                SlotLock.date == on_date,
                SlotLock.start_time == start_time,
            )
            .populate_existing()
            .first()
        )

    def get_active_for_field_date(
        self, field_id: str, on_date: date, now: datetime
    ) -> List[SlotLock]:
        return (
            self.db.query(SlotLock)
            .filter(
                SlotLock.field_id == field_id,
                SlotLock.date == on_date,
                SlotLock.expires_at > now,
            )
            .all()
        )

    def delete_for_user(self, user_id: str, field_id: str, on_date: date) -> int:
        return (
            self.db.query(SlotLock)
            .filter(
                SlotLock.user_id == user_id,
                SlotLock.field_id == field_id,
                SlotLock.date == on_date,
            )
            .delete(synchronize_session=False)
        )

    def delete_expired(self, now: datetime) -> int:
        return (
            self.db.query(SlotLock)
            .filter(SlotLock.expires_at < now)
            .delete(synchronize_session=False)
        )
