"""OTP lifecycle: issue, rate-limit, verify and purge one-time codes.

Codes are tied to a phone number and a purpose (registration or password
reset), so a registration code can never complete a password reset and
vice versa.

Rules:
- At most ``max_per_day`` codes per phone per calendar day (local clock),
  counted from the ``otp_requests`` ledger because the codes themselves are
  purged a few minutes after issue
- A code matches only before its expiry; when several are outstanding the
  most recently created match wins
- A successful verification deletes every code for that phone+purpose
"""
import secrets
import string
from datetime import datetime, time, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session as SQLSession, sessionmaker

from clinic_booking import config
from clinic_booking.api.database_models import OTPPurpose, OTPRecord, OTPRequest, local_now
from clinic_booking.errors import InvalidOrExpiredError, RateLimitError, ValidationError
from clinic_booking.logging_config import get_logger
from clinic_booking.notifier import Notifier
from clinic_booking.validation import normalize_phone

logger = get_logger(__name__)

LEDGER_RETENTION = timedelta(days=2)


def generate_secure_otp(length: int = config.OTP_LENGTH) -> str:
    """Generate a cryptographically secure random numeric OTP."""
    return "".join(secrets.choice(string.digits) for _ in range(length))


def start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


def parse_purpose(purpose) -> OTPPurpose:
    try:
        return OTPPurpose(purpose)
    except ValueError:
        raise ValidationError(f"Unknown OTP purpose: {purpose}")


class OTPManager:
    """Issues and validates one-time codes against the booking store."""

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Notifier,
        max_per_day: int = config.MAX_OTP_PER_DAY,
        validity_minutes: int = config.OTP_VALIDITY_MINUTES,
        retention_minutes: int = config.OTP_RETENTION_MINUTES,
        code_length: int = config.OTP_LENGTH,
        clock: Callable[[], datetime] = local_now
    ):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker for the booking store
            notifier: SMS notifier used to deliver codes
            max_per_day: Codes allowed per phone per calendar day
            validity_minutes: How long a code can be verified
            retention_minutes: How long a code row is kept before purging
            code_length: Number of digits per code
            clock: Returns the current local time
        """
        self.SessionLocal = session_factory
        self.notifier = notifier
        self.max_per_day = max_per_day
        self.validity = timedelta(minutes=validity_minutes)
        self.retention = timedelta(minutes=retention_minutes)
        self.code_length = code_length
        self.clock = clock

    def issued_today(self, phone: str) -> int:
        """Number of codes issued to ``phone`` since local midnight."""
        phone = normalize_phone(phone)
        with self.SessionLocal() as db:
            return self._count_issued_since(db, phone, start_of_day(self.clock()))

    def request_otp(self, phone: str, purpose) -> OTPRecord:
        """
        Issue a new code and send it by SMS.

        The code counts as issued once stored; SMS delivery failure does not
        fail this call.

        Raises:
            ValidationError: Invalid phone or purpose
            RateLimitError: Daily limit reached for this phone
        """
        phone = normalize_phone(phone)
        purpose = parse_purpose(purpose)
        now = self.clock()

        with self.SessionLocal() as db:
            issued = self._count_issued_since(db, phone, start_of_day(now))
            if issued >= self.max_per_day:
                midnight = start_of_day(now) + timedelta(days=1)
                logger.warning("otp_rate_limited", phone=phone, issued_today=issued)
                raise RateLimitError(
                    f"Maximum OTP limit reached for today ({self.max_per_day} OTPs)",
                    retry_after=int((midnight - now).total_seconds()) + 1
                )

            record = OTPRecord(
                phone=phone,
                code=generate_secure_otp(self.code_length),
                purpose=purpose.value,
                expires_at=now + self.validity,
                created_at=now
            )
            db.add(record)
            db.add(OTPRequest(phone=phone, purpose=purpose.value, created_at=now))
            db.commit()

        logger.info(
            "otp_issued",
            phone=phone,
            purpose=purpose.value,
            expires_at=record.expires_at.isoformat(),
        )
        self.notifier.send_otp(phone, record.code)
        return record

    def verify_otp(self, phone: str, code: str, purpose, db: Optional[SQLSession] = None) -> None:
        """
        Check a code and consume every outstanding code for phone+purpose.

        When ``db`` is given the deletion joins the caller's transaction
        (the caller commits); otherwise it is committed here.

        Raises:
            InvalidOrExpiredError: No live code matches
        """
        phone = normalize_phone(phone)
        purpose = parse_purpose(purpose)
        code = (code or "").strip()
        if not code:
            raise InvalidOrExpiredError()

        if db is not None:
            self._consume(db, phone, code, purpose)
            return

        with self.SessionLocal() as own_db:
            self._consume(own_db, phone, code, purpose)
            own_db.commit()

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete code rows past the retention window and stale ledger rows.

        Returns:
            Number of OTP records deleted
        """
        now = now or self.clock()
        with self.SessionLocal() as db:
            deleted = db.query(OTPRecord).filter(
                OTPRecord.created_at < now - self.retention
            ).delete(synchronize_session=False)
            db.query(OTPRequest).filter(
                OTPRequest.created_at < now - LEDGER_RETENTION
            ).delete(synchronize_session=False)
            db.commit()

        if deleted:
            logger.info("otp_records_purged", deleted=deleted)
        return deleted

    def _consume(self, db: SQLSession, phone: str, code: str, purpose: OTPPurpose):
        record = db.query(OTPRecord).filter(
            OTPRecord.phone == phone,
            OTPRecord.code == code,
            OTPRecord.purpose == purpose.value,
            OTPRecord.expires_at > self.clock()
        ).order_by(OTPRecord.created_at.desc(), OTPRecord.id.desc()).first()

        if not record:
            logger.info("otp_rejected", phone=phone, purpose=purpose.value)
            raise InvalidOrExpiredError()

        db.query(OTPRecord).filter(
            OTPRecord.phone == phone,
            OTPRecord.purpose == purpose.value
        ).delete(synchronize_session=False)
        logger.info("otp_verified", phone=phone, purpose=purpose.value)

    @staticmethod
    def _count_issued_since(db: SQLSession, phone: str, since: datetime) -> int:
        return db.query(OTPRequest).filter(
            OTPRequest.phone == phone,
            OTPRequest.created_at >= since
        ).count()
