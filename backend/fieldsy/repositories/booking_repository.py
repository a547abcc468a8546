# backend/fieldsy/repositories/booking_repository.py
"""Data access for bookings and the sequential booking-number counter."""

from datetime import date
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import BookingStatus, PaymentStatus, PayoutStatus
from ..core.exceptions import RepositoryException
from ..models.booking import Booking
from ..models.counter import Counter
from ..models.field import Field
from .base_repository import BaseRepository

_CLOSED_STATUSES = (BookingStatus.CANCELLED.value, BookingStatus.COMPLETED.value)


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_blocking_for_field_date(self, field_id: str, on_date: date) -> List[Booking]:
        """Bookings that still occupy their slot (not cancelled, not completed)."""
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.field_id == field_id,
                    Booking.date == on_date,
                    Booking.status.notin_(_CLOSED_STATUSES),
                )
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading bookings for field {field_id} on {on_date}: {e}")
            raise RepositoryException(f"Failed to load bookings: {e}")

    def get_live_for_field_between(
        self, field_id: str, start_date: date, end_date: date
    ) -> List[Booking]:
        """Non-cancelled bookings for a field in ``[start_date, end_date]``."""
        return (
            self.db.query(Booking)
            .filter(
                Booking.field_id == field_id,
                Booking.date >= start_date,
                Booking.date <= end_date,
                Booking.status != BookingStatus.CANCELLED.value,
            )
            .order_by(Booking.date)
            .all()
        )

    def get_subscription_booking_dates(
        self,
        subscription_ids: Iterable[str],
        start_date: date,
        end_date: Optional[date] = None,
    ) -> Dict[str, Set[date]]:
        ids = list(subscription_ids)
        if not ids:
            return {}
        query = self.db.query(Booking.subscription_id, Booking.date).filter(
            Booking.subscription_id.in_(ids),
            Booking.date >= start_date,
            Booking.status != BookingStatus.CANCELLED.value,
        )
        if end_date is not None:
            query = query.filter(Booking.date <= end_date)
        result: Dict[str, Set[date]] = {}
        for subscription_id, booked_on in query.all():
            result.setdefault(subscription_id, set()).add(booked_on)
        return result

    def exists_for_subscription_on(self, subscription_id: str, on_date: date) -> bool:
        return (
            self.db.query(Booking.id)
            .filter(
                Booking.subscription_id == subscription_id,
                Booking.date == on_date,
                Booking.status != BookingStatus.CANCELLED.value,
            )
            .first()
            is not None
        )

    def get_future_open_for_subscription(
        self, subscription_id: str, from_date: date
    ) -> List[Booking]:
        return (
            self.db.query(Booking)
            .filter(
                Booking.subscription_id == subscription_id,
                Booking.date >= from_date,
                Booking.status.notin_(_CLOSED_STATUSES),
            )
            .all()
        )

    def get_payout_candidates(self, limit: int = 500) -> List[Booking]:
        """Paid, confirmed/completed bookings whose payout has not started or was deferred."""
        return (
            self.db.query(Booking)
            .filter(
                Booking.payment_status == PaymentStatus.PAID.value,
                Booking.status.in_(
                    (BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value)
                ),
                or_(
                    Booking.payout_status.is_(None),
                    Booking.payout_status == PayoutStatus.PENDING.value,
                ),
            )
            .order_by(Booking.date, Booking.created_at)
            .limit(limit)
            .all()
        )

    def get_awaiting_payout_for_owner(self, owner_id: str) -> List[Booking]:
        return (
            self.db.query(Booking)
            .join(Field, Field.id == Booking.field_id)
            .filter(
                Field.owner_id == owner_id,
                Booking.payment_status == PaymentStatus.PAID.value,
                Booking.status.in_(
                    (BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value)
                ),
                or_(
                    Booking.payout_status.is_(None),
                    Booking.payout_status.in_(
                        (PayoutStatus.PENDING.value, PayoutStatus.PENDING_ACCOUNT.value)
                    ),
                ),
            )
            .all()
        )

    def get_paid_for_owner(self, owner_id: str) -> List[Booking]:
        return (
            self.db.query(Booking)
            .join(Field, Field.id == Booking.field_id)
            .filter(
                Field.owner_id == owner_id,
                Booking.payment_status == PaymentStatus.PAID.value,
            )
            .order_by(Booking.date, Booking.start_time)
            .all()
        )

    def get_confirmed_on_or_before(self, cutoff: date) -> List[Booking]:
        return (
            self.db.query(Booking)
            .filter(
                Booking.status == BookingStatus.CONFIRMED.value,
                Booking.date <= cutoff,
            )
            .all()
        )

    def get_field_ids(self, booking_ids: Iterable[str]) -> Dict[str, str]:
        ids = list(booking_ids)
        if not ids:
            return {}
        rows = self.db.query(Booking.id, Booking.field_id).filter(Booking.id.in_(ids)).all()
        return {booking_id: field_id for booking_id, field_id in rows}

    def next_booking_number(self, start: int, counter_name: str = "booking") -> int:
        """
        Atomically allocate the next human-readable booking number.

        The increment runs as a single UPDATE so concurrent writers serialize
        on the counter row; the first caller seeds it with ``start``.
        """
        try:
            result = self.db.execute(
                update(Counter)
                .where(Counter.name == counter_name)
                .values(value=Counter.value + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                with self.db.begin_nested():
                    self.db.add(Counter(name=counter_name, value=start))
                    self.db.flush()
                return start
            return int(
                self.db.query(Counter.value).filter(Counter.name == counter_name).scalar()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error incrementing counter {counter_name}: {e}")
            raise RepositoryException(f"Failed to allocate booking number: {e}")
