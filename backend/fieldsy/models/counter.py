"""Named monotonically increasing counters (human-readable booking numbers)."""

from sqlalchemy import Column, Integer, String

from ..database import Base


class Counter(Base):
    __tablename__ = "counters"

    name = Column(String(64), primary_key=True)
    value = Column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<Counter {self.name}={self.value}>"
