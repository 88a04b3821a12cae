"""SQLAlchemy database models for the booking store."""
from datetime import datetime
from enum import Enum

import bcrypt
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def local_now():
    """Current wall-clock time of the clinic (naive, local)."""
    return datetime.now()


class AppointmentStatus(str, Enum):
    """Appointment lifecycle states."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class OTPPurpose(str, Enum):
    """What an OTP may be used for."""
    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


ACTIVE_STATUSES = (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value)
TERMINAL_STATUSES = (AppointmentStatus.CANCELLED.value, AppointmentStatus.COMPLETED.value)

# Partial-index predicate: only active appointments compete for a slot
_ACTIVE_PREDICATE = text("status IN ('pending', 'confirmed')")


class User(Base):
    """Patient or administrator account."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(13), nullable=False, unique=True, index=True)  # +91XXXXXXXXXX
    email = Column(String(255), nullable=True, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    is_blocked = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=local_now, nullable=False)

    appointments = relationship("Appointment", back_populates="user")

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash password using bcrypt."""
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode(), password_hash.encode())

    def __repr__(self):
        return f"<User(id={self.id}, phone={self.phone}, admin={self.is_admin})>"


class Appointment(Base):
    """A booking of one fixed time slot on one date."""
    __tablename__ = "appointments"
    __table_args__ = (
        # At most one pending/confirmed appointment per (date, slot)
        Index(
            "uq_appointments_active_slot",
            "date",
            "time_slot",
            unique=True,
            sqlite_where=_ACTIVE_PREDICATE,
            postgresql_where=_ACTIVE_PREDICATE,
        ),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    time_slot = Column(String(30), nullable=False)
    status = Column(String(20), default=AppointmentStatus.PENDING.value, nullable=False, index=True)
    pain_type = Column(String(200), nullable=True)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=local_now, nullable=False)
    updated_at = Column(DateTime, default=local_now, onupdate=local_now, nullable=False)

    user = relationship("User", back_populates="appointments")

    def __repr__(self):
        return f"<Appointment(id={self.id}, date={self.date}, slot={self.time_slot}, status={self.status})>"


class OTPRecord(Base):
    """Short-lived one-time code keyed by phone number."""
    __tablename__ = "otp_records"
    __table_args__ = (
        Index("ix_otp_records_phone_created", "phone", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    phone = Column(String(13), nullable=False)
    code = Column(String(10), nullable=False)
    purpose = Column(String(20), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=local_now, nullable=False)

    def __repr__(self):
        return f"<OTPRecord(phone={self.phone}, purpose={self.purpose}, expires_at={self.expires_at})>"


class OTPRequest(Base):
    """Ledger of issued OTPs; outlives the records for daily rate limiting."""
    __tablename__ = "otp_requests"
    __table_args__ = (
        Index("ix_otp_requests_phone_created", "phone", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    phone = Column(String(13), nullable=False)
    purpose = Column(String(20), nullable=False)
    created_at = Column(DateTime, default=local_now, nullable=False)
