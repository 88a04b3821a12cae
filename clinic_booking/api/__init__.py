"""API package initialization."""
from clinic_booking.api.models import ErrorResponse

__all__ = ["ErrorResponse"]
