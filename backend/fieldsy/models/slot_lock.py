"""Short-lived checkout hold on a field slot."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.sql import func

from ..core.ulid_helper import generate_ulid
from ..database import Base


class SlotLock(Base):
    """
    Concurrency-control artifact, not business state.

    The unique key on (field, date, start time) is what makes acquisition
    mutually exclusive across processes; readers still filter on
    ``expires_at`` because the cleanup sweep only runs every few minutes.
    """

    __tablename__ = "slot_locks"

    id = Column(String(26), primary_key=True, default=generate_ulid)
    field_id = Column(String(26), ForeignKey("fields.id"), nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(String(10), nullable=False)
    end_time = Column(String(10), nullable=True)
    user_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("field_id", "date", "start_time", name="uq_slot_locks_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<SlotLock field={self.field_id} {self.date} {self.start_time} "
            f"user={self.user_id} expires={self.expires_at}>"
        )
