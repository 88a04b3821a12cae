"""Shared test fixtures."""
from datetime import date, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from clinic_booking.api.database_models import User
from clinic_booking.auth import IdentityService
from clinic_booking.availability import SlotCalculator
from clinic_booking.booking import BookingService
from clinic_booking.database import create_db_engine, create_session_factory, init_database
from clinic_booking.notifier import DeliveryResult
from clinic_booking.otp import OTPManager
from clinic_booking.rate_limiter import RateLimiter

PATIENT_PHONE = "+919876543210"
ADMIN_PHONE = "+919999999999"
MORNING_SLOT = "10:00 AM - 10:50 AM"
CHRISTMAS = date(2024, 12, 25)  # Wednesday
SUNDAY = date(2024, 12, 22)


class FrozenClock:
    """Controllable replacement for ``local_now``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Notifier double that records every message instead of sending it."""

    def __init__(self):
        self.sent = []
        self.delivered = True

    def send_otp(self, phone, code):
        return self._record("otp", phone, code=code)

    def send_booking_confirmation(self, phone, appointment_date, slot_id):
        return self._record("booking_confirmation", phone, date=appointment_date, slot=slot_id)

    def send_cancellation_notice(self, phone):
        return self._record("cancellation", phone)

    def of_kind(self, kind):
        return [m for m in self.sent if m["kind"] == kind]

    def last_otp(self, phone=PATIENT_PHONE):
        return [m for m in self.of_kind("otp") if m["phone"] == phone][-1]["code"]

    def _record(self, kind, phone, **details):
        self.sent.append({"kind": kind, "phone": phone, **details})
        if self.delivered:
            return DeliveryResult(delivered=True)
        return DeliveryResult(delivered=False, error="provider down")


@pytest.fixture
def clock():
    """Friday 2024-12-20, 09:00 local time."""
    return FrozenClock(datetime(2024, 12, 20, 9, 0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'clinic.db'}"


@pytest.fixture
def engine(database_url):
    engine = create_db_engine(database_url)
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def slot_calculator(session_factory):
    return SlotCalculator(session_factory)


@pytest.fixture
def otp_manager(session_factory, notifier, clock):
    return OTPManager(session_factory, notifier, clock=clock)


@pytest.fixture
def booking_service(session_factory, notifier, slot_calculator, clock):
    return BookingService(session_factory, notifier, slot_calculator, clock=clock)


@pytest.fixture
def identity_service(session_factory, otp_manager, clock):
    return IdentityService(
        session_factory,
        otp_manager,
        login_limiter=RateLimiter(max_attempts=3, window_seconds=60),
        jwt_secret="test-secret",
        admin_phone=ADMIN_PHONE,
        clock=clock
    )


@pytest.fixture
def make_user(session_factory, clock):
    """Insert a verified account directly (bypasses OTP)."""
    counter = {"n": 0}

    def _create(phone=None, name="Test Patient", password="password123",
                email=None, is_admin=False, is_blocked=False):
        counter["n"] += 1
        phone = phone or f"+91987654{counter['n']:04d}"
        with session_factory() as db:
            user = User(
                name=name,
                phone=phone,
                email=email,
                password_hash=User.hash_password(password),
                is_admin=is_admin,
                is_blocked=is_blocked,
                is_verified=True,
                created_at=clock()
            )
            db.add(user)
            db.commit()
        return user

    return _create


@pytest.fixture
def client(database_url, notifier, clock):
    from clinic_booking.api_server import create_app

    app = create_app(database_url=database_url, notifier=notifier, clock=clock)
    with TestClient(app) as test_client:
        yield test_client
