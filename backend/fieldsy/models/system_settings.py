"""Database model for admin-editable platform settings."""

from sqlalchemy import JSON, Column, DateTime, String, Text
from sqlalchemy.sql import func

from ..database import Base


class SystemSettings(Base):
    """Key/value settings documents stored as JSON; the booking engine uses key ``platform``."""

    __tablename__ = "system_settings"

    key = Column(Text, primary_key=True, nullable=False)
    value_json = Column(JSON, nullable=False)
    updated_by_id = Column(String(26), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<SystemSettings key={self.key}>"
