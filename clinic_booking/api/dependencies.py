"""FastAPI dependency injection functions."""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.engine import Engine

from clinic_booking.api.database_models import User, local_now
from clinic_booking.auth import IdentityService
from clinic_booking.availability import SlotCalculator
from clinic_booking.booking import BookingService
from clinic_booking.database import create_db_engine, create_session_factory
from clinic_booking.errors import PermissionDeniedError
from clinic_booking.notifier import Notifier, build_notifier
from clinic_booking.otp import OTPManager
from clinic_booking.rate_limiter import RateLimiter


@dataclass
class ClinicServices:
    """Everything one application instance shares across requests."""
    engine: Engine
    notifier: Notifier
    otp: OTPManager
    slots: SlotCalculator
    booking: BookingService
    identity: IdentityService


def build_services(
    database_url: Optional[str] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = local_now
) -> ClinicServices:
    """
    Wire the services of one application.

    Pattern: one engine and one notifier per process, created here and
    passed to each service (no module-level singletons).
    """
    engine = create_db_engine(database_url)
    session_factory = create_session_factory(engine)
    notifier = notifier or build_notifier()

    otp = OTPManager(session_factory, notifier, clock=clock)
    slots = SlotCalculator(session_factory)

    return ClinicServices(
        engine=engine,
        notifier=notifier,
        otp=otp,
        slots=slots,
        booking=BookingService(session_factory, notifier, slots, clock=clock),
        identity=IdentityService(session_factory, otp, login_limiter=RateLimiter(), clock=clock),
    )


bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> ClinicServices:
    return request.app.state.services


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: ClinicServices = Depends(get_services)
) -> User:
    """
    FastAPI dependency for bearer token authentication.

    Raises:
        AuthError: Missing, invalid or expired token (401)
        PermissionDeniedError: Blocked account (403)
    """
    token = credentials.credentials if credentials else None
    return services.identity.authenticate(token)


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise PermissionDeniedError("Admin access required")
    return user
