"""Pydantic models for API request/response validation."""
import datetime as dt
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from clinic_booking.api.database_models import AppointmentStatus


class SendOTPRequest(BaseModel):
    """Request schema for /api/auth/send-otp and /api/auth/forgot-password."""
    phone: str = Field(
        ...,
        min_length=1,
        max_length=20,
        description="Indian mobile number, any common format",
        examples=["+91 98765 43210", "9876543210"]
    )


class OTPSentResponse(BaseModel):
    message: str = "OTP sent successfully"
    phone: str = Field(..., description="Normalized phone number the OTP was sent to")


class VerifyOTPRequest(BaseModel):
    """Request schema for /api/auth/verify-otp (completes registration)."""
    phone: str = Field(..., min_length=1, max_length=20)
    otp: str = Field(..., min_length=4, max_length=10, description="Code received by SMS")
    name: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=128)
    email: Optional[str] = Field(None, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "phone": "+919876543210",
                "otp": "123456",
                "name": "Priya Sharma",
                "password": "secret123",
                "email": "priya@example.com"
            }
        }
    )


class LoginRequest(BaseModel):
    identifier: str = Field(..., max_length=255, description="Phone number or email")
    password: str = Field(..., max_length=128)


class ResetPasswordRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=20)
    otp: str = Field(..., min_length=4, max_length=10)
    new_password: str = Field(..., min_length=1, max_length=128)


class MessageResponse(BaseModel):
    message: str


class UserResponse(BaseModel):
    """Account as exposed over the API (never includes the password hash)."""
    id: int
    name: str
    phone: str
    email: Optional[str] = None
    is_admin: bool
    is_blocked: bool = False
    created_at: Optional[dt.datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AuthResponse(BaseModel):
    token: str = Field(..., description="Bearer token for the Authorization header")
    user: UserResponse


class SlotResponse(BaseModel):
    slot_id: str = Field(..., examples=["10:00 AM - 10:50 AM"])
    is_booked: bool
    period: str = Field(..., description="morning or afternoon")


class SlotsResponse(BaseModel):
    date: dt.date
    closed: bool = Field(False, description="True on the clinic's weekly closed day")
    slots: List[SlotResponse]


class BookAppointmentRequest(BaseModel):
    """Request schema for /api/appointments/book."""
    date: Optional[dt.date] = Field(None, description="Appointment date (YYYY-MM-DD)")
    time_slot: Optional[str] = Field(None, max_length=50)
    pain_type: Optional[str] = Field(None, max_length=100)
    reason: Optional[str] = Field(None, max_length=1000)
    phone: Optional[str] = Field(None, max_length=20, description="Contact number for the SMS")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "date": "2024-12-25",
                "time_slot": "10:00 AM - 10:50 AM",
                "pain_type": "Back pain",
                "reason": "Lower back pain for two weeks"
            }
        }
    )


class AppointmentResponse(BaseModel):
    id: int
    user_id: int
    date: dt.date
    time_slot: str
    status: AppointmentStatus
    pain_type: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BookingResponse(BaseModel):
    message: str = "Appointment booked successfully"
    appointment: AppointmentResponse


class AppointmentListResponse(BaseModel):
    appointments: List[AppointmentResponse]


class AdminAppointmentResponse(AppointmentResponse):
    """Appointment plus the patient it belongs to."""
    user: UserResponse


class AdminAppointmentListResponse(BaseModel):
    appointments: List[AdminAppointmentResponse]


class AppointmentUpdateRequest(BaseModel):
    """Admin status change and/or notes."""
    status: Optional[AppointmentStatus] = None
    notes: Optional[str] = Field(None, max_length=2000)


class AppointmentUpdateResponse(BaseModel):
    message: str = "Appointment updated successfully"
    appointment: AdminAppointmentResponse


class UserListResponse(BaseModel):
    users: List[UserResponse]


class BlockUserRequest(BaseModel):
    is_blocked: bool


class BlockUserResponse(BaseModel):
    message: str
    user: UserResponse
    cancelled_appointments: int = Field(0, description="Active appointments cancelled by the block")


class StatsResponse(BaseModel):
    total_users: int
    today_appointments: int
    upcoming_appointments: int
    pending_appointments: int
    total_appointments: int


class ErrorResponse(BaseModel):
    """Error response schema."""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Detailed error information")
    code: Optional[str] = Field(None, description="Error code")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Conflict",
                "detail": "This slot is already booked",
                "code": "SLOT_ALREADY_BOOKED"
            }
        }
    )
