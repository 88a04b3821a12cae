"""FastAPI production server for clinic appointment booking.

Features:
- CORS middleware for the booking frontend
- Global exception handling (service errors map to ErrorResponse bodies)
- Health check endpoint
- Structured logging with per-request IDs
- Background task purging expired OTP codes
"""
import asyncio
import datetime as dt
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinic_booking import config
from clinic_booking.api.database_models import User, local_now
from clinic_booking.api.dependencies import (
    ClinicServices,
    build_services,
    get_current_user,
    get_services,
    require_admin,
)
from clinic_booking.api.models import (
    AdminAppointmentListResponse,
    AdminAppointmentResponse,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentUpdateRequest,
    AppointmentUpdateResponse,
    AuthResponse,
    BlockUserRequest,
    BlockUserResponse,
    BookAppointmentRequest,
    BookingResponse,
    ErrorResponse,
    LoginRequest,
    MessageResponse,
    OTPSentResponse,
    ResetPasswordRequest,
    SendOTPRequest,
    SlotResponse,
    SlotsResponse,
    StatsResponse,
    UserListResponse,
    UserResponse,
    VerifyOTPRequest,
)
from clinic_booking.database import init_database
from clinic_booking.errors import AuthError, ClinicError, PermissionDeniedError, RateLimitError
from clinic_booking.logging_config import RequestIDMiddleware, get_logger, setup_structured_logging
from clinic_booking.notifier import Notifier
from clinic_booking.otp import OTPManager

logger = get_logger(__name__)


async def purge_otps_periodically(otp_manager: OTPManager, interval_seconds: int):
    """Background task deleting OTP codes past their retention window."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await asyncio.to_thread(otp_manager.purge_expired)
        except Exception as e:
            logger.error("otp_purge_failed", error=str(e))


# ----------------------------------------------------------------------
# Auth routes
# ----------------------------------------------------------------------

auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])


@auth_router.post("/send-otp", response_model=OTPSentResponse)
def send_otp(request: SendOTPRequest, services: ClinicServices = Depends(get_services)):
    """Send a registration OTP (at most 5 per phone per day)."""
    record = services.identity.start_registration(request.phone)
    return OTPSentResponse(phone=record.phone)


@auth_router.post("/verify-otp", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def verify_otp(request: VerifyOTPRequest, services: ClinicServices = Depends(get_services)):
    """Verify the registration OTP and create the account."""
    session = services.identity.register(
        phone=request.phone,
        code=request.otp,
        name=request.name,
        password=request.password,
        email=request.email
    )
    return AuthResponse(token=session.token, user=UserResponse.model_validate(session.user))


@auth_router.post("/login", response_model=AuthResponse)
def login(request: LoginRequest, services: ClinicServices = Depends(get_services)):
    session = services.identity.login(request.identifier, request.password)
    return AuthResponse(token=session.token, user=UserResponse.model_validate(session.user))


@auth_router.post("/forgot-password", response_model=OTPSentResponse)
def forgot_password(request: SendOTPRequest, services: ClinicServices = Depends(get_services)):
    record = services.identity.start_password_reset(request.phone)
    return OTPSentResponse(phone=record.phone)


@auth_router.post("/reset-password", response_model=MessageResponse)
def reset_password(request: ResetPasswordRequest, services: ClinicServices = Depends(get_services)):
    services.identity.reset_password(request.phone, request.otp, request.new_password)
    return MessageResponse(message="Password reset successfully")


@auth_router.get("/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)):
    return UserResponse.model_validate(user)


# ----------------------------------------------------------------------
# Appointment routes
# ----------------------------------------------------------------------

appointments_router = APIRouter(prefix="/api/appointments", tags=["Appointments"])


@appointments_router.get("/slots/{date}", response_model=SlotsResponse)
def get_slots(date: dt.date, services: ClinicServices = Depends(get_services)):
    """Slot availability for one date (no authentication needed)."""
    slots = services.slots.get_slots(date)
    return SlotsResponse(
        date=date,
        closed=services.slots.is_closed_day(date),
        slots=[
            SlotResponse(slot_id=s.slot_id, is_booked=s.is_booked, period=s.period.value)
            for s in slots
        ]
    )


@appointments_router.post("/book", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    request: BookAppointmentRequest,
    user: User = Depends(get_current_user),
    services: ClinicServices = Depends(get_services)
):
    """
    Book a slot for the authenticated patient.

    Raises:
        400: Missing/invalid slot, past date or closed day
        403: Admin or blocked account
        409: Slot already booked
    """
    appointment = services.booking.book(
        user,
        request.date,
        request.time_slot,
        pain_type=request.pain_type,
        reason=request.reason,
        phone=request.phone
    )
    return BookingResponse(appointment=AppointmentResponse.model_validate(appointment))


@appointments_router.get("/my-appointments", response_model=AppointmentListResponse)
def my_appointments(
    user: User = Depends(get_current_user),
    services: ClinicServices = Depends(get_services)
):
    appointments = services.booking.list_for_user(user)
    return AppointmentListResponse(
        appointments=[AppointmentResponse.model_validate(a) for a in appointments]
    )


@appointments_router.delete("/{appointment_id}", response_model=MessageResponse)
def cancel_appointment(
    appointment_id: int,
    user: User = Depends(get_current_user),
    services: ClinicServices = Depends(get_services)
):
    services.booking.cancel(appointment_id, user)
    return MessageResponse(message="Appointment cancelled successfully")


# ----------------------------------------------------------------------
# Admin routes
# ----------------------------------------------------------------------

admin_router = APIRouter(prefix="/api/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@admin_router.get("/appointments", response_model=AdminAppointmentListResponse)
def list_appointments(
    date: Optional[dt.date] = Query(None, description="Only this date"),
    status: Optional[str] = Query(None, description="pending, confirmed, cancelled or completed"),
    services: ClinicServices = Depends(get_services)
):
    appointments = services.booking.list_all(day=date, status=status)
    return AdminAppointmentListResponse(
        appointments=[AdminAppointmentResponse.model_validate(a) for a in appointments]
    )


@admin_router.patch("/appointments/{appointment_id}", response_model=AppointmentUpdateResponse)
def update_appointment(
    appointment_id: int,
    request: AppointmentUpdateRequest,
    services: ClinicServices = Depends(get_services)
):
    appointment = services.booking.update_status(
        appointment_id,
        status=request.status.value if request.status else None,
        notes=request.notes
    )
    return AppointmentUpdateResponse(appointment=AdminAppointmentResponse.model_validate(appointment))


@admin_router.get("/users", response_model=UserListResponse)
def list_users(services: ClinicServices = Depends(get_services)):
    users = services.booking.list_patients()
    return UserListResponse(users=[UserResponse.model_validate(u) for u in users])


@admin_router.patch("/users/{user_id}/block", response_model=BlockUserResponse)
def block_user(
    user_id: int,
    request: BlockUserRequest,
    services: ClinicServices = Depends(get_services)
):
    user, cancelled = services.booking.set_user_blocked(user_id, request.is_blocked)
    return BlockUserResponse(
        message="User blocked successfully" if request.is_blocked else "User unblocked successfully",
        user=UserResponse.model_validate(user),
        cancelled_appointments=cancelled
    )


@admin_router.get("/stats", response_model=StatsResponse)
def dashboard_stats(services: ClinicServices = Depends(get_services)):
    return StatsResponse(**services.booking.dashboard_stats())


# ----------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------

def create_app(
    database_url: Optional[str] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = local_now,
    purge_interval_seconds: int = config.OTP_PURGE_INTERVAL_SECONDS
) -> FastAPI:
    """
    Build the FastAPI application and its services.

    Args:
        database_url: SQLAlchemy URL (default: config.DATABASE_URL)
        notifier: SMS notifier (default: chosen from configuration)
        clock: Local wall-clock source shared by all services
        purge_interval_seconds: Seconds between OTP purge runs
    """
    services = build_services(database_url=database_url, notifier=notifier, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown logic."""
        logger.info("server_starting", clinic=config.CLINIC_NAME)

        try:
            init_database(services.engine)
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

        purge_task = asyncio.create_task(
            purge_otps_periodically(services.otp, purge_interval_seconds)
        )

        yield

        purge_task.cancel()
        try:
            await purge_task
        except asyncio.CancelledError:
            logger.info("otp_purge_task_cancelled")

        services.engine.dispose()
        logger.info("server_stopped")

    app = FastAPI(
        title="Clinic Appointment Booking API",
        description=f"Appointment booking for {config.CLINIC_NAME}",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials="*" not in config.CORS_ORIGINS,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(ClinicError)
    async def clinic_error_handler(request: Request, exc: ClinicError):
        """Map service errors to their HTTP status and error code."""
        headers = {}
        if isinstance(exc, RateLimitError) and exc.retry_after:
            headers["Retry-After"] = str(exc.retry_after)
        if isinstance(exc, AuthError) and not isinstance(exc, PermissionDeniedError):
            headers["WWW-Authenticate"] = "Bearer"

        if exc.status_code >= 500:
            logger.error("request_failed", code=exc.code, error=exc.message)
        else:
            logger.info("request_rejected", status=exc.status_code, code=exc.code, error=exc.message)

        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.title,
                detail=exc.message,
                code=exc.code
            ).model_dump(),
            headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors consistently."""
        logger.warning("request_validation_failed", errors=str(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=ErrorResponse(
                error="Validation Error",
                detail=str(exc.errors()),
                code="VALIDATION_ERROR"
            ).model_dump()
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all handler for unexpected exceptions."""
        logger.error("unexpected_error", error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail="An unexpected error occurred",
                code="INTERNAL_ERROR"
            ).model_dump()
        )

    @app.get("/api/health", tags=["Health"])
    async def health_check():
        """Health check endpoint for load balancers."""
        return {
            "status": "healthy",
            "service": "clinic-booking-api",
            "version": "1.0.0"
        }

    app.include_router(auth_router)
    app.include_router(appointments_router)
    app.include_router(admin_router)
    return app


setup_structured_logging(config.LOG_LEVEL)
app = create_app()


def main():
    """Run the API server (console script ``clinic-booking-api``)."""
    uvicorn.run(app, host="0.0.0.0", port=config.API_PORT)


if __name__ == "__main__":
    main()
