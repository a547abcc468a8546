"""Injectable clocks so time-dependent code can be tested without sleeping."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import time
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Current wall-clock time (timezone-aware UTC)."""

    def monotonic(self) -> float:
        """Monotonic seconds for TTL bookkeeping."""


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class FixedClock:
    """Test double: time only moves when ``advance`` or ``set`` is called."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = ensure_utc(start or datetime(2025, 1, 1, tzinfo=timezone.utc))
        self._mono = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float = 0.0, **delta: float) -> None:
        step = timedelta(seconds=seconds, **delta)
        self._now += step
        self._mono += step.total_seconds()

    def set(self, when: datetime) -> None:
        when = ensure_utc(when)
        self._mono += max((when - self._now).total_seconds(), 0.0)
        self._now = when


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_today(clock: Optional[Clock] = None) -> date:
    return (clock or SystemClock()).now().date()
