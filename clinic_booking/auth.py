"""Account registration, login and session tokens.

Sessions are stateless signed tokens (PyJWT, HS256) carrying the user id.
Every authenticated request re-reads the user so that blocking takes
effect immediately, even for tokens issued earlier.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Callable, Optional

import jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as SQLSession, sessionmaker

from clinic_booking import config
from clinic_booking.api.database_models import OTPPurpose, User, local_now
from clinic_booking.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from clinic_booking.logging_config import get_logger
from clinic_booking.otp import OTPManager
from clinic_booking.rate_limiter import RateLimiter
from clinic_booking.validation import (
    normalize_email,
    normalize_phone,
    password_too_long,
    validate_name,
    validate_password,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Session:
    """Bearer token plus the account it was issued for."""
    token: str
    user: User


class IdentityService:
    """
    Manages patient accounts and their sessions.

    Pattern: OTP proves phone ownership before an account exists or a
    password is replaced; passwords are stored as bcrypt hashes only.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        otp_manager: OTPManager,
        login_limiter: Optional[RateLimiter] = None,
        jwt_secret: str = config.JWT_SECRET,
        jwt_algorithm: str = config.JWT_ALGORITHM,
        token_expire_days: int = config.JWT_EXPIRE_DAYS,
        admin_phone: str = config.ADMIN_PHONE,
        min_password_length: int = config.MIN_PASSWORD_LENGTH,
        clock: Callable[[], datetime] = local_now
    ):
        self.SessionLocal = session_factory
        self.otp = otp_manager
        self.login_limiter = login_limiter or RateLimiter()
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.token_lifetime = timedelta(days=token_expire_days)
        self.admin_phone = normalize_phone(admin_phone)
        self.min_password_length = min_password_length
        self.clock = clock

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def start_registration(self, phone: str):
        """
        Send a registration OTP to ``phone``.

        Raises:
            ValidationError: Invalid phone number
            ConflictError: Phone already registered
            RateLimitError: Daily OTP limit reached
        """
        phone = normalize_phone(phone)

        with self.SessionLocal() as db:
            if self._find_by_phone(db, phone):
                raise ConflictError("Phone number already registered", code="PHONE_TAKEN")

        return self.otp.request_otp(phone, OTPPurpose.REGISTRATION)

    def register(
        self,
        phone: str,
        code: str,
        name: str,
        password: str,
        email: Optional[str] = None
    ) -> Session:
        """
        Verify the registration OTP and create the account.

        The OTP is consumed in the same transaction as the insert, so a
        failed insert leaves the code usable.

        Returns:
            Session for the new account

        Raises:
            ValidationError: Bad phone, name, password or email
            ConflictError: Phone or email already registered
            InvalidOrExpiredError: OTP does not match a live code
        """
        phone = normalize_phone(phone)
        name = validate_name(name)
        password = validate_password(password, self.min_password_length)
        email = normalize_email(email)

        with self.SessionLocal() as db:
            if email and db.query(User).filter(User.email == email).first():
                raise ConflictError("Email already registered", code="EMAIL_TAKEN")
            if self._find_by_phone(db, phone):
                raise ConflictError("Phone number already registered", code="PHONE_TAKEN")

            self.otp.verify_otp(phone, code, OTPPurpose.REGISTRATION, db=db)

            user = User(
                name=name,
                phone=phone,
                email=email,
                password_hash=User.hash_password(password),
                is_admin=phone == self.admin_phone,
                is_blocked=False,
                is_verified=True,
                created_at=self.clock()
            )
            db.add(user)

            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConflictError("Phone number or email already registered")

        logger.info("user_registered", user_id=user.id, phone=phone, is_admin=user.is_admin)
        return Session(token=self.issue_token(user), user=user)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str) -> Session:
        """
        Log in with a phone number or an email address.

        Raises:
            ValidationError: Identifier or password missing
            RateLimitError: Too many attempts for this identifier
            AuthError: Unknown account or wrong password
            PermissionDeniedError: Account blocked
        """
        identifier = (identifier or "").strip()
        if not identifier or not password:
            raise ValidationError("Please enter your phone number or email and password")

        key = self._login_key(identifier)
        self.login_limiter.check_rate_limit(key)

        with self.SessionLocal() as db:
            user = self._find_login_user(db, identifier)

        if not user:
            logger.info("login_failed", identifier=key, reason="unknown_account")
            raise AuthError("Invalid credentials", code="INVALID_CREDENTIALS")

        if user.is_blocked:
            logger.info("login_blocked", user_id=user.id)
            raise PermissionDeniedError(
                f"Your account has been blocked. Contact admin: {self.admin_phone}",
                code="ACCOUNT_BLOCKED"
            )

        # Nothing over the bcrypt limit was ever stored, so it cannot match
        if password_too_long(password) or not User.verify_password(password, user.password_hash):
            logger.info("login_failed", identifier=key, reason="wrong_password")
            raise AuthError("Invalid credentials", code="INVALID_CREDENTIALS")

        self.login_limiter.reset(key)
        logger.info("login_succeeded", user_id=user.id)
        return Session(token=self.issue_token(user), user=user)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def start_password_reset(self, phone: str):
        """
        Send a password-reset OTP.

        Raises:
            NotFoundError: No account for ``phone``
            RateLimitError: Daily OTP limit reached
        """
        phone = normalize_phone(phone)

        with self.SessionLocal() as db:
            if not self._find_by_phone(db, phone):
                raise NotFoundError("Phone number not registered")

        return self.otp.request_otp(phone, OTPPurpose.PASSWORD_RESET)

    def reset_password(self, phone: str, code: str, new_password: str) -> User:
        """Replace the password after verifying a password-reset OTP."""
        phone = normalize_phone(phone)
        new_password = validate_password(new_password, self.min_password_length)

        with self.SessionLocal() as db:
            self.otp.verify_otp(phone, code, OTPPurpose.PASSWORD_RESET, db=db)

            user = self._find_by_phone(db, phone)
            if not user:
                raise NotFoundError("Phone number not registered")

            user.password_hash = User.hash_password(new_password)
            db.commit()

        logger.info("password_reset", user_id=user.id)
        return user

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def issue_token(self, user: User) -> str:
        # Token lifetime uses real UTC time; PyJWT validates ``exp`` against it
        now = datetime.now(UTC)
        payload = {
            "sub": str(user.id),
            "phone": user.phone,
            "is_admin": bool(user.is_admin),
            "iat": now,
            "exp": now + self.token_lifetime,
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=self.jwt_algorithm)

    def authenticate(self, token: Optional[str]) -> User:
        """
        Resolve a bearer token to its (current) user.

        Raises:
            AuthError: Missing, invalid or expired token, or unknown user
            PermissionDeniedError: User is blocked
        """
        if not token:
            raise AuthError("Authentication required")

        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthError("Session expired, please log in again", code="TOKEN_EXPIRED")
        except jwt.InvalidTokenError:
            raise AuthError("Invalid token", code="INVALID_TOKEN")

        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise AuthError("Invalid token", code="INVALID_TOKEN")

        with self.SessionLocal() as db:
            user = db.get(User, user_id)

        if not user:
            raise AuthError("User not found", code="INVALID_TOKEN")
        if user.is_blocked:
            raise PermissionDeniedError(
                f"Your account has been blocked. Contact admin: {self.admin_phone}",
                code="ACCOUNT_BLOCKED"
            )
        return user

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    def _find_by_phone(db: SQLSession, phone: str) -> Optional[User]:
        return db.query(User).filter(User.phone == phone).first()

    @staticmethod
    def _login_key(identifier: str) -> str:
        if "@" in identifier:
            return identifier.lower()
        try:
            return normalize_phone(identifier)
        except ValidationError:
            return identifier

    def _find_login_user(self, db: SQLSession, identifier: str) -> Optional[User]:
        # A malformed phone or email simply matches no account
        try:
            if "@" in identifier:
                return db.query(User).filter(User.email == normalize_email(identifier)).first()
            return self._find_by_phone(db, normalize_phone(identifier))
        except ValidationError:
            return None
