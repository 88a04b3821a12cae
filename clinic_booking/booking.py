"""Appointment booking, cancellation and admin management.

Booking Conflict Guard:
- Validation runs in a fixed order and short-circuits before any write
- The "slot already booked" check is repeated right before the insert, but
  the real guarantee is the partial unique index on (date, time_slot) for
  active appointments; an IntegrityError at commit is reported as the same
  conflict

Status state machine:
    pending -> confirmed -> completed
    pending | confirmed -> cancelled
    cancelled, completed: terminal

SMS notices are sent only after the change is committed; their outcome
never changes the result of the operation.
"""
import calendar
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as SQLSession, joinedload, sessionmaker

from clinic_booking.api.database_models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Appointment,
    AppointmentStatus,
    User,
    local_now,
)
from clinic_booking.availability import SlotCalculator
from clinic_booking.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from clinic_booking.logging_config import get_logger
from clinic_booking.notifier import Notifier
from clinic_booking.validation import normalize_phone

logger = get_logger(__name__)

TRANSITIONS = {
    AppointmentStatus.PENDING: {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED},
    AppointmentStatus.CONFIRMED: {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED},
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.COMPLETED: set(),
}

SLOT_TAKEN_MESSAGE = "This slot is already booked"


def parse_status(status) -> AppointmentStatus:
    try:
        return AppointmentStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown appointment status: {status}")


class BookingService:
    """Appointment operations for patients and the clinic admin."""

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Notifier,
        slot_calculator: SlotCalculator,
        clock: Callable[[], datetime] = local_now
    ):
        self.SessionLocal = session_factory
        self.notifier = notifier
        self.slots = slot_calculator
        self.clock = clock

    # ------------------------------------------------------------------
    # Patient operations
    # ------------------------------------------------------------------

    def book(
        self,
        user: User,
        appointment_date: Optional[date],
        slot_id: Optional[str],
        pain_type: Optional[str] = None,
        reason: Optional[str] = None,
        phone: Optional[str] = None
    ) -> Appointment:
        """
        Book ``slot_id`` on ``appointment_date`` for ``user``.

        Args:
            user: Authenticated patient
            appointment_date: Calendar date of the visit
            slot_id: One of the fixed daily slots
            pain_type: Optional complaint category
            reason: Optional free-text reason
            phone: Optional contact number for the confirmation SMS
                (defaults to the account phone)

        Returns:
            The created appointment (status pending)

        Raises:
            PermissionDeniedError: Caller is an administrator or blocked
            ValidationError: Missing/invalid date or slot, past date, closed day
            ConflictError: Slot already held by an active appointment
        """
        if user.is_admin:
            raise PermissionDeniedError("Admin cannot book appointments")

        if appointment_date is None or not slot_id:
            raise ValidationError("Date and time slot are required")

        if not self.slots.is_valid_slot(slot_id):
            raise ValidationError(f"Invalid time slot: {slot_id}")

        if appointment_date < self.clock().date():
            raise ValidationError("Cannot book appointments in the past")

        if self.slots.is_closed_day(appointment_date):
            closed_day = calendar.day_name[self.slots.closed_weekday]
            raise ValidationError(f"Clinic is closed on {closed_day}s")

        if user.is_blocked:
            raise PermissionDeniedError("Your account has been blocked")

        contact_phone = normalize_phone(phone) if phone else user.phone
        now = self.clock()

        with self.SessionLocal() as db:
            if self._slot_taken(db, appointment_date, slot_id):
                raise ConflictError(SLOT_TAKEN_MESSAGE, code="SLOT_ALREADY_BOOKED")

            appointment = Appointment(
                user_id=user.id,
                date=appointment_date,
                time_slot=slot_id,
                status=AppointmentStatus.PENDING.value,
                pain_type=(pain_type or "").strip() or None,
                reason=(reason or "").strip() or None,
                created_at=now,
                updated_at=now
            )
            db.add(appointment)

            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(
                    "booking_race_lost",
                    date=appointment_date.isoformat(),
                    slot=slot_id,
                    user_id=user.id,
                )
                raise ConflictError(SLOT_TAKEN_MESSAGE, code="SLOT_ALREADY_BOOKED")

        logger.info(
            "appointment_booked",
            appointment_id=appointment.id,
            date=appointment_date.isoformat(),
            slot=slot_id,
            user_id=user.id,
        )
        self.notifier.send_booking_confirmation(contact_phone, appointment_date, slot_id)
        return appointment

    def list_for_user(self, user: User) -> List[Appointment]:
        """Appointments of ``user``, latest date first, slots in schedule order."""
        with self.SessionLocal() as db:
            appointments = db.query(Appointment).options(
                joinedload(Appointment.user)
            ).filter(Appointment.user_id == user.id).all()

        return sorted(
            appointments,
            key=lambda a: (-a.date.toordinal(), self.slots.slot_order(a.time_slot))
        )

    def cancel(self, appointment_id: int, actor: User) -> Appointment:
        """
        Cancel an appointment as its owner or as the admin.

        Raises:
            NotFoundError: No such appointment
            PermissionDeniedError: Actor is neither the owner nor admin
            ConflictError: Appointment already cancelled or completed
        """
        with self.SessionLocal() as db:
            appointment = self._get_for_update(db, appointment_id)

            if appointment.user_id != actor.id and not actor.is_admin:
                raise PermissionDeniedError("Not authorized to cancel this appointment")

            self._transition(db, appointment, AppointmentStatus.CANCELLED)
            owner_phone = appointment.user.phone
            self._commit(db)

        logger.info(
            "appointment_cancelled",
            appointment_id=appointment.id,
            by_admin=actor.is_admin,
            actor_id=actor.id,
        )
        if actor.is_admin:
            self.notifier.send_cancellation_notice(owner_phone)
        return appointment

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def list_all(self, day: Optional[date] = None, status: Optional[str] = None) -> List[Appointment]:
        """All appointments, optionally filtered by date and status."""
        with self.SessionLocal() as db:
            query = db.query(Appointment).options(joinedload(Appointment.user))
            if day is not None:
                query = query.filter(Appointment.date == day)
            if status:
                query = query.filter(Appointment.status == parse_status(status).value)
            appointments = query.all()

        return sorted(
            appointments,
            key=lambda a: (a.date, self.slots.slot_order(a.time_slot))
        )

    def update_status(
        self,
        appointment_id: int,
        status: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Appointment:
        """
        Admin status change and/or notes update.

        Passing the current status (or none) only updates the notes.
        Confirming sends a confirmation SMS; cancelling sends a
        cancellation SMS.

        Raises:
            NotFoundError: No such appointment
            ValidationError: Unknown status value
            ConflictError: Transition not allowed from the current status
        """
        new_status = parse_status(status) if status else None

        with self.SessionLocal() as db:
            appointment = self._get_for_update(db, appointment_id)
            old_status = AppointmentStatus(appointment.status)
            changed = new_status is not None and new_status != old_status

            if changed:
                self._transition(db, appointment, new_status)
            if notes is not None:
                appointment.notes = notes.strip() or None
                appointment.updated_at = self.clock()

            owner_phone = appointment.user.phone
            self._commit(db)

        if changed:
            logger.info(
                "appointment_status_changed",
                appointment_id=appointment.id,
                old_status=old_status.value,
                new_status=new_status.value,
            )
            if new_status == AppointmentStatus.CONFIRMED:
                self.notifier.send_booking_confirmation(owner_phone, appointment.date, appointment.time_slot)
            elif new_status == AppointmentStatus.CANCELLED:
                self.notifier.send_cancellation_notice(owner_phone)

        return appointment

    def set_user_blocked(self, user_id: int, blocked: bool) -> Tuple[User, int]:
        """
        Block or unblock a patient.

        Blocking cancels each of the patient's pending/confirmed
        appointments and sends one cancellation SMS per appointment.

        Returns:
            (updated user, number of appointments cancelled)

        Raises:
            NotFoundError: No such user
            ValidationError: Target is the administrator
        """
        cancelled = []

        with self.SessionLocal() as db:
            user = db.get(User, user_id)
            if not user:
                raise NotFoundError("User not found")
            if user.is_admin:
                raise ValidationError("Cannot block admin")

            user.is_blocked = blocked

            if blocked:
                active = db.query(Appointment).filter(
                    Appointment.user_id == user.id,
                    Appointment.status.in_(ACTIVE_STATUSES)
                ).all()
                for appointment in active:
                    self._transition(db, appointment, AppointmentStatus.CANCELLED)
                    cancelled.append(appointment)

            self._commit(db)

        logger.info(
            "user_blocked" if blocked else "user_unblocked",
            user_id=user.id,
            cancelled_appointments=len(cancelled),
        )
        for _ in cancelled:
            self.notifier.send_cancellation_notice(user.phone)

        return user, len(cancelled)

    def list_patients(self) -> List[User]:
        """Non-admin accounts, newest first."""
        with self.SessionLocal() as db:
            return db.query(User).filter(
                User.is_admin == False  # noqa: E712
            ).order_by(User.created_at.desc(), User.id.desc()).all()

    def dashboard_stats(self) -> Dict[str, int]:
        today = self.clock().date()

        with self.SessionLocal() as db:
            active = db.query(Appointment).filter(Appointment.status.in_(ACTIVE_STATUSES))
            return {
                "total_users": db.query(User).filter(User.is_admin == False).count(),  # noqa: E712
                "today_appointments": active.filter(Appointment.date == today).count(),
                "upcoming_appointments": active.filter(Appointment.date >= today).count(),
                "pending_appointments": db.query(Appointment).filter(
                    Appointment.status == AppointmentStatus.PENDING.value
                ).count(),
                "total_appointments": db.query(Appointment).count(),
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _slot_taken(db: SQLSession, appointment_date: date, slot_id: str) -> bool:
        return db.query(Appointment.id).filter(
            Appointment.date == appointment_date,
            Appointment.time_slot == slot_id,
            Appointment.status.in_(ACTIVE_STATUSES)
        ).first() is not None

    @staticmethod
    def _get_for_update(db: SQLSession, appointment_id: int) -> Appointment:
        appointment = db.query(Appointment).options(
            joinedload(Appointment.user)
        ).filter(Appointment.id == appointment_id).first()

        if not appointment:
            raise NotFoundError("Appointment not found")
        return appointment

    @staticmethod
    def _commit(db: SQLSession):
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ConflictError(SLOT_TAKEN_MESSAGE, code="SLOT_ALREADY_BOOKED")

    def _transition(self, db: SQLSession, appointment: Appointment, new_status: AppointmentStatus):
        """
        Move ``appointment`` to ``new_status`` if the table allows it.

        The UPDATE is conditional on the status that was read, so a change
        committed by another request in the meantime is reported as a
        conflict instead of being overwritten.
        """
        current = AppointmentStatus(appointment.status)

        if current.value in TERMINAL_STATUSES:
            raise ConflictError(
                f"Appointment is already {current.value} (terminal state)",
                code="ALREADY_TERMINAL"
            )
        if new_status not in TRANSITIONS[current]:
            raise ConflictError(
                f"Cannot change status from {current.value} to {new_status.value}",
                code="INVALID_TRANSITION"
            )

        try:
            updated = db.query(Appointment).filter(
                Appointment.id == appointment.id,
                Appointment.status == current.value
            ).update(
                {"status": new_status.value, "updated_at": self.clock()},
                synchronize_session="fetch"
            )
        except IntegrityError:
            db.rollback()
            raise ConflictError(SLOT_TAKEN_MESSAGE, code="SLOT_ALREADY_BOOKED")

        if not updated:
            logger.info(
                "appointment_status_race_lost",
                appointment_id=appointment.id,
                expected_status=current.value,
                new_status=new_status.value,
            )
            raise ConflictError(
                "Appointment was changed by another request, please reload",
                code="CONCURRENT_UPDATE"
            )
