# backend/fieldsy/services/availability_service.py
"""
Availability Resolver.

Decides whether a field slot is free by checking, in this order:

1. hard bookings that still occupy the slot (not cancelled or completed)
2. recurring holds from active subscriptions whose cadence lands on the
   date, unless that occurrence has already been materialized as a booking
3. checkout locks held by other users (optional)

The first conflict wins. Callers run this when a slot is offered and again
right before the booking row is written.
"""

from dataclasses import dataclass, field as dataclass_field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytz
from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import Settings, settings as default_settings
from ..core.exceptions import NotFoundException, TimeParseError, ValidationException
from ..models.booking import Booking
from ..models.subscription import Subscription
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .recurrence import coerce_interval, iter_occurrences, occurs_on, weekday_name
from .slot_lock_service import SlotLockService
from .time_slots import (
    booking_start_instant,
    format_minutes,
    format_time_slot,
    overlaps,
    parse_time,
)

BOOKED_REASON = "This time slot is already booked"
LOCKED_REASON = "This time slot is currently being booked by another user"


@dataclass(frozen=True)
class AvailabilityResult:
    available: bool
    reason: Optional[str] = None
    conflict_type: Optional[str] = None  # 'booking' | 'recurring' | 'lock'
    conflicting_id: Optional[str] = None

    @classmethod
    def free(cls) -> "AvailabilityResult":
        return cls(available=True)


@dataclass(frozen=True)
class RecurringReservation:
    date: date
    time_slot: str
    start_time: str
    end_time: str
    subscription_id: str
    interval: str


@dataclass(frozen=True)
class RecurringConflictReport:
    has_conflict: bool
    conflicting_dates: List[str] = dataclass_field(default_factory=list)


@dataclass(frozen=True)
class SlotAvailability:
    start_time: str
    end_time: str
    is_booked: bool
    is_past: bool
    is_locked: bool

    @property
    def is_available(self) -> bool:
        return not (self.is_booked or self.is_past or self.is_locked)


def recurring_reason(subscription: Subscription) -> str:
    slot = subscription.time_slot or format_time_slot(
        subscription.start_time, subscription.end_time
    )
    return f"This time slot is reserved by a {subscription.interval} recurring booking ({slot})"


class AvailabilityService(BaseService):
    def __init__(
        self,
        db: Session,
        *,
        slot_lock_service: SlotLockService,
        config: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(db, clock)
        self.config = config or default_settings
        self.slot_lock_service = slot_lock_service
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.subscription_repository = RepositoryFactory.create_subscription_repository(db)
        self.field_repository = RepositoryFactory.create_field_repository(db)

    # ------------------------------------------------------------------ #
    # Core check
    # ------------------------------------------------------------------ #

    @BaseService.measure_operation("check_availability")
    def is_available(
        self,
        field_id: str,
        on_date: date,
        start_time: str,
        end_time: str,
        exclude_booking_id: Optional[str] = None,
        exclude_subscription_id: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        include_locks: Optional[bool] = None,
    ) -> AvailabilityResult:
        """
        Lock checks run when ``user_id`` is given (that user's own locks are
        ignored) unless ``include_locks`` says otherwise.
        """
        start, end = self._requested_range(start_time, end_time)
        if include_locks is None:
            include_locks = user_id is not None

        booking_conflict = self._find_booking_conflict(
            self.booking_repository.get_blocking_for_field_date(field_id, on_date),
            start,
            end,
            exclude_booking_id,
        )
        if booking_conflict is not None:
            return AvailabilityResult(
                available=False,
                reason=BOOKED_REASON,
                conflict_type="booking",
                conflicting_id=booking_conflict.id,
            )

        subscriptions = self.subscription_repository.get_reserving_for_field(
            field_id, exclude_subscription_id
        )
        materialized = self.booking_repository.get_subscription_booking_dates(
            [s.id for s in subscriptions], on_date, on_date
        )
        subscription_conflict = self._find_recurring_conflict(
            subscriptions, materialized, on_date, start, end
        )
        if subscription_conflict is not None:
            return AvailabilityResult(
                available=False,
                reason=recurring_reason(subscription_conflict),
                conflict_type="recurring",
                conflicting_id=subscription_conflict.id,
            )

        if include_locks:
            lock = self.slot_lock_service.find_overlapping_lock(
                field_id, on_date, start, end, exclude_user_id=user_id
            )
            if lock is not None:
                return AvailabilityResult(
                    available=False, reason=LOCKED_REASON, conflict_type="lock"
                )

        return AvailabilityResult.free()

    # ------------------------------------------------------------------ #
    # Recurring projections
    # ------------------------------------------------------------------ #

    def get_recurring_reserved_dates(
        self,
        field_id: str,
        range_start: date,
        range_end: date,
        now: Optional[datetime] = None,
    ) -> List[RecurringReservation]:
        """Future cadence dates held by subscriptions but not yet booked."""
        today = self.now(now).astimezone(pytz.timezone(self.config.booking_timezone)).date()
        range_start = max(range_start, today)
        if range_start > range_end:
            return []
        subscriptions = self.subscription_repository.get_reserving_for_field(field_id)
        booked = self.booking_repository.get_subscription_booking_dates(
            [s.id for s in subscriptions], range_start, range_end
        )
        reservations: List[RecurringReservation] = []
        for subscription in subscriptions:
            cadence = self._cadence_kwargs(subscription)
            if cadence is None:
                continue
            taken = booked.get(subscription.id, set())
            for occurrence in iter_occurrences(
                subscription.interval, range_start, range_end, **cadence
            ):
                if occurrence in taken:
                    continue
                reservations.append(
                    RecurringReservation(
                        date=occurrence,
                        time_slot=subscription.time_slot
                        or format_time_slot(subscription.start_time, subscription.end_time),
                        start_time=subscription.start_time,
                        end_time=subscription.end_time,
                        subscription_id=subscription.id,
                        interval=subscription.interval,
                    )
                )
        reservations.sort(key=lambda r: (r.date, r.start_time))
        return reservations

    @BaseService.measure_operation("check_recurring_subscription_conflicts")
    def check_recurring_subscription_conflicts(
        self,
        field_id: str,
        start_date: date,
        start_time: str,
        end_time: str,
        interval: str,
        horizon_days: Optional[int] = None,
        *,
        day_of_week: Optional[str] = None,
        day_of_month: Optional[int] = None,
    ) -> RecurringConflictReport:
        """
        Dates within the horizon where a new recurring series would collide
        with an existing booking or another subscription's hold.
        """
        coerce_interval(interval)
        start, end = self._requested_range(start_time, end_time)
        if horizon_days is None:
            horizon_days = self.config.recurring_conflict_horizon_days
        horizon_end = start_date + timedelta(days=horizon_days)
        day_of_week = day_of_week or weekday_name(start_date)
        day_of_month = day_of_month or start_date.day

        bookings_by_date: Dict[date, List[Booking]] = {}
        for booking in self.booking_repository.get_live_for_field_between(
            field_id, start_date, horizon_end
        ):
            bookings_by_date.setdefault(booking.date, []).append(booking)

        subscriptions = self.subscription_repository.get_reserving_for_field(field_id)
        materialized = self.booking_repository.get_subscription_booking_dates(
            [s.id for s in subscriptions], start_date, horizon_end
        )

        conflicting: List[str] = []
        for occurrence in iter_occurrences(
            interval,
            start_date,
            horizon_end,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
        ):
            if self._find_booking_conflict(bookings_by_date.get(occurrence, []), start, end):
                conflicting.append(occurrence.isoformat())
                continue
            if self._find_recurring_conflict(subscriptions, materialized, occurrence, start, end):
                conflicting.append(occurrence.isoformat())

        if conflicting:
            self.logger.info(
                f"New {interval} series on field {field_id} collides on {len(conflicting)} dates"
            )
        return RecurringConflictReport(
            has_conflict=bool(conflicting), conflicting_dates=conflicting
        )

    # ------------------------------------------------------------------ #
    # Calendar grid
    # ------------------------------------------------------------------ #

    def get_field_day_availability(
        self,
        field_id: str,
        on_date: date,
        *,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[SlotAvailability]:
        """Per-slot availability over the field's operating hours for one day."""
        field = self.field_repository.get_by_id(field_id)
        if field is None:
            raise NotFoundException(f"Field {field_id} not found")
        if not field.opens_on(weekday_name(on_date)):
            return []

        opening = parse_time(field.opening_time or "6:00AM")
        closing = parse_time(field.closing_time or "9:00PM")
        step = 30 if field.booking_duration == "30min" else 60
        current = self.now(now)

        bookings = self.booking_repository.get_blocking_for_field_date(field_id, on_date)
        subscriptions = self.subscription_repository.get_reserving_for_field(field_id)
        materialized = self.booking_repository.get_subscription_booking_dates(
            [s.id for s in subscriptions], on_date, on_date
        )

        slots: List[SlotAvailability] = []
        for slot_start in range(opening, closing - step + 1, step):
            slot_end = slot_start + step
            start_label, end_label = format_minutes(slot_start), format_minutes(slot_end)
            is_booked = (
                self._find_booking_conflict(bookings, slot_start, slot_end) is not None
                or self._find_recurring_conflict(
                    subscriptions, materialized, on_date, slot_start, slot_end
                )
                is not None
            )
            starts_at = booking_start_instant(on_date, start_label, self.config.booking_timezone)
            is_locked = (
                self.slot_lock_service.find_overlapping_lock(
                    field_id, on_date, slot_start, slot_end, exclude_user_id=user_id
                )
                is not None
            )
            slots.append(
                SlotAvailability(
                    start_time=start_label,
                    end_time=end_label,
                    is_booked=is_booked,
                    is_past=starts_at <= current,
                    is_locked=is_locked,
                )
            )
        return slots

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    @staticmethod
    def _requested_range(start_time: str, end_time: str) -> Tuple[int, int]:
        start, end = parse_time(start_time), parse_time(end_time)
        if end <= start:
            raise ValidationException(
                "End time must be after start time",
                code="INVALID_TIME_RANGE",
                details={"start_time": start_time, "end_time": end_time},
            )
        return start, end

    def _find_booking_conflict(
        self,
        bookings: Sequence[Booking],
        start: int,
        end: int,
        exclude_booking_id: Optional[str] = None,
    ) -> Optional[Booking]:
        for booking in bookings:
            if exclude_booking_id and booking.id == exclude_booking_id:
                continue
            try:
                booked_start = parse_time(booking.start_time)
                booked_end = parse_time(booking.end_time)
            except TimeParseError:
                # Malformed stored rows must not turn into phantom midnight slots
                self.logger.warning(
                    f"Skipping booking {booking.id} with malformed times "
                    f"{booking.start_time!r}-{booking.end_time!r}"
                )
                continue
            if overlaps(start, end, booked_start, booked_end):
                return booking
        return None

    def _find_recurring_conflict(
        self,
        subscriptions: Sequence[Subscription],
        materialized: Dict[str, Set[date]],
        on_date: date,
        start: int,
        end: int,
    ) -> Optional[Subscription]:
        for subscription in subscriptions:
            cadence = self._cadence_kwargs(subscription)
            if cadence is None or not occurs_on(subscription.interval, on_date, **cadence):
                continue
            # A concrete booking for this occurrence replaces the abstract hold
            if on_date in materialized.get(subscription.id, set()):
                continue
            try:
                held_start = parse_time(subscription.start_time)
                held_end = parse_time(subscription.end_time)
            except TimeParseError:
                self.logger.warning(f"Skipping subscription {subscription.id} with malformed times")
                continue
            if overlaps(start, end, held_start, held_end):
                return subscription
        return None

    def _cadence_kwargs(self, subscription: Subscription) -> Optional[Dict[str, object]]:
        interval = subscription.interval
        if interval == "weekly" and not subscription.day_of_week:
            self.logger.warning(f"Weekly subscription {subscription.id} has no day of week")
            return None
        if interval == "monthly" and not subscription.day_of_month:
            self.logger.warning(f"Monthly subscription {subscription.id} has no day of month")
            return None
        return {
            "day_of_week": subscription.day_of_week,
            "day_of_month": subscription.day_of_month,
        }
