"""Input normalization shared by every boundary that accepts user data."""
import re
from typing import Optional

from clinic_booking import config
from clinic_booking.errors import ValidationError

CANONICAL_PHONE = re.compile(r"^\+91[6-9]\d{9}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SEPARATORS = re.compile(r"[\s\-.()]")


def normalize_phone(raw: Optional[str]) -> str:
    """
    Normalize an Indian mobile number to ``+91XXXXXXXXXX``.

    Accepts ``+91 98765 43210``, ``919876543210``, ``09876543210`` and
    ``9876543210``.

    Raises:
        ValidationError: If the number is missing or not a valid mobile number
    """
    if not raw or not raw.strip():
        raise ValidationError("Phone number is required")

    phone = _SEPARATORS.sub("", raw.strip())

    if phone.startswith("+91"):
        pass
    elif phone.startswith("91") and len(phone) == 12:
        phone = "+" + phone
    else:
        phone = "+91" + phone.lstrip("0")

    if not CANONICAL_PHONE.match(phone):
        raise ValidationError("Invalid Indian phone number")

    return phone


def normalize_email(raw: Optional[str]) -> Optional[str]:
    """Lower-case and validate an optional email. Blank means no email."""
    if raw is None or not raw.strip():
        return None

    email = raw.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email format")
    return email


def validate_password(raw: Optional[str], min_length: int = config.MIN_PASSWORD_LENGTH) -> str:
    if not raw or len(raw) < min_length:
        raise ValidationError(f"Password must be at least {min_length} characters")
    if password_too_long(raw):
        raise ValidationError(f"Password must be at most {config.MAX_PASSWORD_BYTES} bytes")
    return raw


def password_too_long(raw: str) -> bool:
    return len(raw.encode("utf-8")) > config.MAX_PASSWORD_BYTES


def validate_name(raw: Optional[str]) -> str:
    name = (raw or "").strip()
    if not name:
        raise ValidationError("Name is required")
    if len(name) > 100:
        raise ValidationError("Name must be at most 100 characters")
    return name
