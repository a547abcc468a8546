"""
Slot Lock Manager.

A slot lock is a short-TTL row that stops two checkouts for the same field,
date and start time from both reaching the payment step. Acquisition is
decided by the ``uq_slot_locks_key`` unique constraint, so it holds across
API processes. Every read filters on ``expires_at``; the periodic cleanup is
housekeeping only.
"""

from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.clock import Clock, ensure_utc
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import IntegrityViolationException, SlotLockedException
from ..models.slot_lock import SlotLock
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .time_slots import overlaps, time_to_minutes


class SlotLockService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        config: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.config = config or default_settings
        self.repository = RepositoryFactory.create_slot_lock_repository(db)

    @BaseService.measure_operation("acquire_slot_lock")
    def acquire(
        self,
        user_id: str,
        field_id: str,
        on_date: date,
        start_time: str,
        end_time: Optional[str] = None,
        ttl: Optional[timedelta] = None,
    ) -> SlotLock:
        """
        Take (or extend) the checkout lock for a slot.

        Raises:
            SlotLockedException: another user holds an unexpired lock
        """
        now = self.now()
        expires_at = now + (ttl or timedelta(minutes=self.config.slot_lock_ttl_minutes))

        with self.transaction():
            existing = self.repository.get_by_key(field_id, on_date, start_time)
            if existing is not None:
                if ensure_utc(existing.expires_at) > now and existing.user_id != user_id:
                    prometheus_metrics.record_slot_lock("conflict")
                    raise SlotLockedException(expires_at=ensure_utc(existing.expires_at))
                if existing.user_id == user_id:
                    self.repository.update(existing, expires_at=expires_at, end_time=end_time)
                    prometheus_metrics.record_slot_lock("extended")
                    return existing
                # Expired lock held by someone else: clear it and take the slot
                self.repository.delete(existing)

            try:
                lock = self.repository.create(
                    field_id=field_id,
                    date=on_date,
                    start_time=start_time,
                    end_time=end_time,
                    user_id=user_id,
                    expires_at=expires_at,
                )
            except IntegrityViolationException:
                # Lost the race to a concurrent acquirer between the read and the insert
                winner = self.repository.get_by_key(field_id, on_date, start_time)
                prometheus_metrics.record_slot_lock("conflict")
                raise SlotLockedException(
                    expires_at=ensure_utc(winner.expires_at) if winner else None
                )

        prometheus_metrics.record_slot_lock("acquired")
        self.logger.info(f"Slot lock acquired on field {field_id} {on_date} {start_time}")
        return lock

    def release(self, user_id: str, field_id: str, on_date: date) -> int:
        """Drop all of a user's locks for the field and date."""
        with self.transaction():
            removed = self.repository.delete_for_user(user_id, field_id, on_date)
        if removed:
            prometheus_metrics.record_slot_lock("released")
        return removed

    def is_locked_by_other(
        self, field_id: str, on_date: date, start_time: str, user_id: Optional[str]
    ) -> bool:
        lock = self.repository.get_by_key(field_id, on_date, start_time)
        if lock is None or ensure_utc(lock.expires_at) <= self.now():
            return False
        return lock.user_id != user_id

    def get_active_locks(self, field_id: str, on_date: date) -> List[SlotLock]:
        return self.repository.get_active_for_field_date(field_id, on_date, self.now())

    def find_overlapping_lock(
        self,
        field_id: str,
        on_date: date,
        start_minutes: int,
        end_minutes: int,
        exclude_user_id: Optional[str],
    ) -> Optional[SlotLock]:
        """An unexpired lock by another user whose range overlaps the request."""
        for lock in self.get_active_locks(field_id, on_date):
            if lock.user_id == exclude_user_id:
                continue
            lock_start = time_to_minutes(lock.start_time, default=-1)
            if lock_start < 0:
                continue
            # Locks taken without an end time cover their start instant only
            lock_end = lock_start
            if lock.end_time:
                lock_end = time_to_minutes(lock.end_time, default=lock_start)
            if lock_end <= lock_start:
                if start_minutes <= lock_start < end_minutes:
                    return lock
                continue
            if overlaps(start_minutes, end_minutes, lock_start, lock_end):
                return lock
        return None

    @BaseService.measure_operation("cleanup_expired_slot_locks")
    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        with self.transaction():
            removed = self.repository.delete_expired(self.now(now))
        if removed:
            self.logger.info(f"Cleaned up {removed} expired slot locks")
        return removed
