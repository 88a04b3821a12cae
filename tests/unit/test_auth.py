"""Test account registration, login and session tokens."""
from datetime import datetime, timedelta, UTC

import jwt
import pytest

from clinic_booking.api.database_models import OTPRecord, User
from clinic_booking.errors import (
    AuthError,
    ConflictError,
    InvalidOrExpiredError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ValidationError,
)
from tests.conftest import ADMIN_PHONE, PATIENT_PHONE


def register_patient(identity_service, notifier, phone=PATIENT_PHONE, email=None):
    identity_service.start_registration(phone)
    return identity_service.register(
        phone, notifier.last_otp(phone), "Priya Sharma", "secret123", email=email
    )


class TestRegistration:

    def test_register_with_valid_otp_creates_verified_user(self, identity_service, notifier):
        identity_service.start_registration("98765 43210")

        session = identity_service.register(
            "+91 98765 43210", notifier.last_otp(), "Priya Sharma", "secret123",
            email="Priya@Example.com"
        )

        assert session.user.phone == PATIENT_PHONE
        assert session.user.email == "priya@example.com"
        assert session.user.is_verified
        assert not session.user.is_admin
        assert session.user.password_hash != "secret123"
        assert identity_service.authenticate(session.token).id == session.user.id

    def test_admin_phone_registers_as_admin(self, identity_service, notifier):
        session = register_patient(identity_service, notifier, phone=ADMIN_PHONE)

        assert session.user.is_admin

    def test_wrong_code_is_rejected_and_no_user_created(self, identity_service, session_factory):
        identity_service.start_registration(PATIENT_PHONE)

        with pytest.raises(InvalidOrExpiredError):
            identity_service.register(PATIENT_PHONE, "000000x", "Priya", "secret123")

        with session_factory() as db:
            assert db.query(User).count() == 0

    def test_short_password_rejected_before_otp_is_consumed(self, identity_service, notifier, session_factory):
        identity_service.start_registration(PATIENT_PHONE)

        with pytest.raises(ValidationError, match="at least 8 characters"):
            identity_service.register(PATIENT_PHONE, notifier.last_otp(), "Priya", "short")

        with session_factory() as db:
            assert db.query(OTPRecord).filter(OTPRecord.phone == PATIENT_PHONE).count() == 1

    def test_password_over_bcrypt_limit_rejected_before_otp_is_consumed(self, identity_service, notifier, session_factory):
        identity_service.start_registration(PATIENT_PHONE)

        with pytest.raises(ValidationError, match="at most 72 bytes"):
            identity_service.register(PATIENT_PHONE, notifier.last_otp(), "Priya", "a" * 100)

        with session_factory() as db:
            assert db.query(User).count() == 0
            assert db.query(OTPRecord).filter(OTPRecord.phone == PATIENT_PHONE).count() == 1

    def test_registered_phone_cannot_request_registration_otp(self, identity_service, notifier):
        register_patient(identity_service, notifier)

        with pytest.raises(ConflictError, match="already registered"):
            identity_service.start_registration(PATIENT_PHONE)

    def test_duplicate_email_is_conflict(self, identity_service, notifier, make_user):
        make_user(email="priya@example.com")
        identity_service.start_registration(PATIENT_PHONE)

        with pytest.raises(ConflictError, match="Email already registered"):
            identity_service.register(
                PATIENT_PHONE, notifier.last_otp(), "Priya", "secret123", email="PRIYA@example.com"
            )

    def test_invalid_email_format(self, identity_service, notifier):
        identity_service.start_registration(PATIENT_PHONE)

        with pytest.raises(ValidationError, match="Invalid email format"):
            identity_service.register(
                PATIENT_PHONE, notifier.last_otp(), "Priya", "secret123", email="not-an-email"
            )


class TestLogin:

    def test_login_by_phone_and_email(self, identity_service, notifier):
        register_patient(identity_service, notifier, email="priya@example.com")

        by_phone = identity_service.login("09876543210", "secret123")
        by_email = identity_service.login("  PRIYA@example.com ", "secret123")

        assert by_phone.user.phone == PATIENT_PHONE
        assert by_email.user.id == by_phone.user.id

    def test_wrong_password(self, identity_service, make_user):
        make_user(phone=PATIENT_PHONE, password="password123")

        with pytest.raises(AuthError, match="Invalid credentials") as exc_info:
            identity_service.login(PATIENT_PHONE, "wrong-password")

        assert exc_info.value.status_code == 401

    def test_password_over_bcrypt_limit_is_invalid_credentials(self, identity_service, make_user):
        make_user(phone=PATIENT_PHONE, password="password123")

        with pytest.raises(AuthError, match="Invalid credentials"):
            identity_service.login(PATIENT_PHONE, "a" * 100)

    def test_unknown_or_malformed_identifier_is_invalid_credentials(self, identity_service):
        with pytest.raises(AuthError, match="Invalid credentials"):
            identity_service.login("12345", "password123")
        with pytest.raises(AuthError, match="Invalid credentials"):
            identity_service.login("nobody@example.com", "password123")

    def test_blocked_user_cannot_log_in(self, identity_service, make_user):
        make_user(phone=PATIENT_PHONE, password="password123", is_blocked=True)

        with pytest.raises(PermissionDeniedError, match="Contact admin: \\+919999999999") as exc_info:
            identity_service.login(PATIENT_PHONE, "password123")

        assert exc_info.value.status_code == 403

    def test_missing_fields(self, identity_service):
        with pytest.raises(ValidationError):
            identity_service.login("   ", "password123")
        with pytest.raises(ValidationError):
            identity_service.login(PATIENT_PHONE, "")

    def test_repeated_failures_are_throttled(self, identity_service, make_user):
        """Fixture limiter allows 3 attempts per identifier per minute."""
        make_user(phone=PATIENT_PHONE, password="password123")

        for _ in range(3):
            with pytest.raises(AuthError):
                identity_service.login("9876543210", "wrong-password")

        # Same account in another format counts against the same key
        with pytest.raises(RateLimitError):
            identity_service.login("+91 98765 43210", "password123")


class TestPasswordReset:

    def test_reset_password_with_otp(self, identity_service, notifier, make_user):
        make_user(phone=PATIENT_PHONE, password="old-password")

        identity_service.start_password_reset(PATIENT_PHONE)
        identity_service.reset_password(PATIENT_PHONE, notifier.last_otp(), "new-password")

        assert identity_service.login(PATIENT_PHONE, "new-password").user.phone == PATIENT_PHONE
        with pytest.raises(AuthError):
            identity_service.login(PATIENT_PHONE, "old-password")

    def test_reset_rejects_password_over_bcrypt_limit(self, identity_service, notifier, make_user):
        make_user(phone=PATIENT_PHONE, password="old-password")
        identity_service.start_password_reset(PATIENT_PHONE)

        # 40 two-byte characters: under 128 characters but over 72 bytes
        with pytest.raises(ValidationError, match="at most 72 bytes"):
            identity_service.reset_password(PATIENT_PHONE, notifier.last_otp(), "é" * 40)

        assert identity_service.login(PATIENT_PHONE, "old-password").user.phone == PATIENT_PHONE

    def test_unregistered_phone(self, identity_service):
        with pytest.raises(NotFoundError, match="not registered"):
            identity_service.start_password_reset(PATIENT_PHONE)

    def test_registration_code_cannot_reset_password(self, identity_service, otp_manager, make_user):
        make_user(phone=PATIENT_PHONE)
        record = otp_manager.request_otp(PATIENT_PHONE, "registration")

        with pytest.raises(InvalidOrExpiredError):
            identity_service.reset_password(PATIENT_PHONE, record.code, "new-password")


class TestTokens:

    def test_missing_or_garbage_token(self, identity_service):
        with pytest.raises(AuthError, match="Authentication required"):
            identity_service.authenticate(None)
        with pytest.raises(AuthError, match="Invalid token"):
            identity_service.authenticate("not-a-jwt")

    def test_token_signed_with_other_secret(self, identity_service, make_user):
        user = make_user()
        token = jwt.encode({"sub": str(user.id)}, "other-secret", algorithm="HS256")

        with pytest.raises(AuthError, match="Invalid token"):
            identity_service.authenticate(token)

    def test_expired_token(self, identity_service, make_user):
        user = make_user()
        past = datetime.now(UTC) - timedelta(days=31)
        token = jwt.encode(
            {"sub": str(user.id), "iat": past, "exp": past + timedelta(days=30)},
            "test-secret",
            algorithm="HS256"
        )

        with pytest.raises(AuthError, match="expired"):
            identity_service.authenticate(token)

    def test_token_of_blocked_user_is_refused(self, identity_service, booking_service, make_user):
        user = make_user()
        token = identity_service.issue_token(user)

        booking_service.set_user_blocked(user.id, True)

        with pytest.raises(PermissionDeniedError):
            identity_service.authenticate(token)
