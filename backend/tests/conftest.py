# backend/tests/conftest.py
"""
Pytest configuration for the Fieldsy booking engine.

Every test gets a fresh in-memory SQLite database, a frozen clock and a
``MagicMock`` Stripe gateway, so nothing here talks to Stripe or redis.
"""

import os
import sys

# Set BEFORE any fieldsy imports so module-level settings pick these up
os.environ["CI"] = "true"
os.environ["PAYOUT_LOCK_ENABLED"] = "false"
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

# Add the backend directory to Python path so imports work
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)

from datetime import date, datetime, timezone
from decimal import Decimal
from itertools import count
from typing import Any, Callable, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fieldsy.core.clock import FixedClock
from fieldsy.core.config import Settings
from fieldsy.core.enums import BookingStatus, PaymentStatus, UserRole
from fieldsy.core.ttl_cache import TTLCache
from fieldsy.database import Base
import fieldsy.models  # noqa: F401
from fieldsy.models.booking import Booking
from fieldsy.models.field import Field
from fieldsy.models.stripe_account import StripeAccount
from fieldsy.models.subscription import Subscription
from fieldsy.models.user import User
from fieldsy.services.dependencies import ServiceContainer
from fieldsy.services.stripe_service import StripeService

# Monday 2 June 2025, 10:00 in London (BST)
NOW = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
NEXT_TUESDAY = date(2025, 6, 10)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; take it over
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine) -> Session:
    TestingSession = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def config() -> Settings:
    return Settings(
        _env_file=None,
        payout_lock_enabled=False,
        booking_timezone="Europe/London",
        stripe_currency="gbp",
    )


@pytest.fixture
def stripe_mock() -> MagicMock:
    """Stripe gateway double returning plain dicts shaped like Stripe objects."""
    mock = MagicMock(spec=StripeService)
    mock.retrieve_charge.return_value = {"id": "ch_test", "balance_transaction": None}
    mock.retrieve_balance.return_value = {
        "available": [{"currency": "gbp", "amount": 10_000_000}],
        "pending": [{"currency": "gbp", "amount": 0}],
    }
    mock.create_transfer.return_value = {"id": "tr_test"}
    mock.create_payout.return_value = {"id": "po_test", "status": "pending", "arrival_date": None}
    mock.create_refund.return_value = {"id": "re_test", "status": "succeeded"}
    mock.create_transfer_reversal.return_value = {"id": "trr_test"}
    mock.create_customer.return_value = {"id": "cus_test"}
    mock.create_product.return_value = {"id": "prod_test"}
    mock.create_price.return_value = {"id": "price_test"}
    mock.create_subscription.return_value = {
        "id": "sub_test",
        "status": "active",
        "current_period_start": None,
        "current_period_end": None,
        "latest_invoice": {"payment_intent": {"client_secret": "pi_secret_test"}},
    }
    mock.list_open_invoices.return_value = [{"id": "in_test"}]
    mock.pay_invoice.return_value = {"id": "in_test", "status": "paid"}
    return mock


@pytest.fixture
def container(db, stripe_mock, clock, config) -> ServiceContainer:
    return ServiceContainer(
        db,
        stripe_service=stripe_mock,
        clock=clock,
        config=config,
        settings_cache=TTLCache(clock),
    )


# ---------------------------------------------------------------------- #
# Row builders
# ---------------------------------------------------------------------- #

_emails = count(1)
_booking_numbers = count(5000)


@pytest.fixture
def make_user(db) -> Callable[..., User]:
    def _make(role: UserRole = UserRole.DOG_OWNER, **overrides: Any) -> User:
        n = next(_emails)
        user = User(
            email=overrides.pop("email", f"user{n}@example.com"),
            name=overrides.pop("name", f"User {n}"),
            role=role.value,
            **overrides,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def dog_owner(make_user) -> User:
    return make_user(UserRole.DOG_OWNER, name="Dana Walker")


@pytest.fixture
def field_owner(make_user) -> User:
    return make_user(UserRole.FIELD_OWNER, name="Farmer Giles")


@pytest.fixture
def admin(make_user) -> User:
    return make_user(UserRole.ADMIN, name="Ops Admin")


@pytest.fixture
def make_field(db) -> Callable[..., Field]:
    def _make(owner: User, **overrides: Any) -> Field:
        values = {
            "owner_id": owner.id,
            "name": "Meadow Run",
            "opening_time": "6:00AM",
            "closing_time": "9:00PM",
            "price_1hr": Decimal("10.00"),
            "price_30min": Decimal("6.00"),
            "booking_duration": "1hour",
            "max_dogs": 10,
            "is_active": True,
            "is_approved": True,
        }
        values.update(overrides)
        field = Field(**values)
        db.add(field)
        db.commit()
        return field

    return _make


@pytest.fixture
def field(make_field, field_owner) -> Field:
    return make_field(field_owner)


@pytest.fixture
def make_booking(db) -> Callable[..., Booking]:
    def _make(
        field: Field,
        user: User,
        on_date: date = NEXT_TUESDAY,
        start_time: str = "09:00",
        end_time: str = "10:00",
        *,
        total_price: Decimal = Decimal("100.00"),
        status: BookingStatus = BookingStatus.CONFIRMED,
        payment_status: PaymentStatus = PaymentStatus.PAID,
        payout_status: Optional[str] = None,
        **overrides: Any,
    ) -> Booking:
        values = {
            "booking_number": next(_booking_numbers),
            "field_id": field.id,
            "user_id": user.id,
            "date": on_date,
            "start_time": start_time,
            "end_time": end_time,
            "time_slot": f"{start_time} - {end_time}",
            "number_of_dogs": 1,
            "total_price": total_price,
            "status": status.value,
            "payment_status": payment_status.value,
            "payout_status": payout_status,
            "platform_commission": Decimal("20.00"),
            "field_owner_amount": Decimal("80.00"),
            "payment_intent_id": "pi_test",
            "stripe_charge_id": "ch_test",
        }
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def make_stripe_account(db) -> Callable[..., StripeAccount]:
    def _make(owner: User, *, payable: bool = True, **overrides: Any) -> StripeAccount:
        values = {
            "user_id": owner.id,
            "stripe_account_id": f"acct_{owner.id[-8:].lower()}",
            "charges_enabled": payable,
            "payouts_enabled": payable,
            "details_submitted": payable,
        }
        values.update(overrides)
        account = StripeAccount(**values)
        db.add(account)
        db.commit()
        return account

    return _make


@pytest.fixture
def make_subscription(db) -> Callable[..., Subscription]:
    def _make(field: Field, user: User, **overrides: Any) -> Subscription:
        values = {
            "user_id": user.id,
            "field_id": field.id,
            "stripe_subscription_id": "sub_test",
            "stripe_customer_id": "cus_test",
            "interval": "weekly",
            "day_of_week": "Tuesday",
            "start_time": "09:00",
            "end_time": "10:00",
            "time_slot": "9:00AM - 10:00AM",
            "number_of_dogs": 1,
            "total_price": Decimal("10.00"),
            "status": "active",
        }
        values.update(overrides)
        subscription = Subscription(**values)
        db.add(subscription)
        db.commit()
        return subscription

    return _make
