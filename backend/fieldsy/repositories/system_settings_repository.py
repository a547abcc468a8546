"""Repository helpers for the system settings table."""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..models.system_settings import SystemSettings
from .base_repository import BaseRepository


class SystemSettingsRepository(BaseRepository[SystemSettings]):
    def __init__(self, db: Session):
        super().__init__(db, SystemSettings)

    def get_by_key(self, key: str) -> Optional[SystemSettings]:
        return self.db.get(SystemSettings, key)

    def upsert(
        self,
        *,
        key: str,
        value: Dict[str, Any],
        updated_at: datetime,
        updated_by_id: Optional[str] = None,
    ) -> SystemSettings:
        record = self.get_by_key(key)
        if record is None:
            record = SystemSettings(
                key=key, value_json=value, updated_at=updated_at, updated_by_id=updated_by_id
            )
            self.db.add(record)
        else:
            record.value_json = value
            record.updated_at = updated_at
            record.updated_by_id = updated_by_id
        self.db.flush()
        return record
