"""Error taxonomy shared by services and the HTTP layer.

Services raise these before any mutation; the API maps them to
``ErrorResponse`` bodies using ``status_code`` and ``code``.
"""
from typing import Optional


class ClinicError(Exception):
    """Base class for all user-facing errors."""
    status_code = 500
    code = "SERVER_ERROR"
    title = "Server Error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(ClinicError):
    """Malformed or missing input, or a business-rule violation on input."""
    status_code = 400
    code = "VALIDATION_ERROR"
    title = "Validation Error"


class InvalidOrExpiredError(ValidationError):
    """No live OTP matches the submitted phone, code and purpose."""
    code = "INVALID_OR_EXPIRED_OTP"

    def __init__(self, message: str = "Invalid or expired OTP"):
        super().__init__(message)


class RateLimitError(ClinicError):
    """Raised when a per-phone or per-identifier limit is reached."""
    status_code = 429
    code = "RATE_LIMITED"
    title = "Too Many Requests"

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ConflictError(ClinicError):
    """Slot already booked, duplicate account, or illegal status change."""
    status_code = 409
    code = "CONFLICT"
    title = "Conflict"


class AuthError(ClinicError):
    """Invalid credentials or a missing/invalid session token."""
    status_code = 401
    code = "AUTH_ERROR"
    title = "Unauthorized"


class PermissionDeniedError(AuthError):
    """Authenticated, but not allowed (blocked account, insufficient privilege)."""
    status_code = 403
    code = "FORBIDDEN"
    title = "Forbidden"


class NotFoundError(ClinicError):
    """Referenced appointment, user or OTP does not exist."""
    status_code = 404
    code = "NOT_FOUND"
    title = "Not Found"


class TransientProviderError(Exception):
    """SMS provider failure. Never leaves the notifier."""
    pass
