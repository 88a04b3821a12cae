"""Test appointment status transitions, cancellation and blocking."""
from unittest.mock import patch

import pytest

from clinic_booking.api.database_models import Appointment
from clinic_booking.booking import BookingService
from clinic_booking.errors import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from tests.conftest import CHRISTMAS, MORNING_SLOT, PATIENT_PHONE

AFTERNOON_SLOT = "03:00 PM - 03:50 PM"


@pytest.fixture
def patient(make_user):
    return make_user(phone=PATIENT_PHONE)


@pytest.fixture
def admin(make_user):
    return make_user(phone="+919999999999", is_admin=True)


@pytest.fixture
def appointment(booking_service, patient, notifier):
    appointment = booking_service.book(patient, CHRISTMAS, MORNING_SLOT)
    notifier.sent.clear()
    return appointment


class TestAdminTransitions:

    def test_pending_to_confirmed_sends_confirmation(self, booking_service, appointment, notifier):
        updated = booking_service.update_status(appointment.id, "confirmed")

        assert updated.status == "confirmed"
        assert notifier.sent == [{
            "kind": "booking_confirmation",
            "phone": PATIENT_PHONE,
            "date": CHRISTMAS,
            "slot": MORNING_SLOT,
        }]

    def test_confirmed_to_completed(self, booking_service, appointment):
        booking_service.update_status(appointment.id, "confirmed")

        assert booking_service.update_status(appointment.id, "completed").status == "completed"

    def test_pending_cannot_jump_to_completed(self, booking_service, appointment):
        with pytest.raises(ConflictError, match="Cannot change status from pending to completed"):
            booking_service.update_status(appointment.id, "completed")

    def test_confirmed_cannot_go_back_to_pending(self, booking_service, appointment):
        booking_service.update_status(appointment.id, "confirmed")

        with pytest.raises(ConflictError, match="from confirmed to pending"):
            booking_service.update_status(appointment.id, "pending")

    @pytest.mark.parametrize("terminal", ["cancelled", "completed"])
    def test_terminal_states_are_final(self, booking_service, appointment, terminal):
        if terminal == "completed":
            booking_service.update_status(appointment.id, "confirmed")
        booking_service.update_status(appointment.id, terminal)

        for target in ("pending", "confirmed", "cancelled", "completed"):
            if target == terminal:
                continue
            with pytest.raises(ConflictError, match="terminal state"):
                booking_service.update_status(appointment.id, target)

    def test_admin_cancel_sends_cancellation_notice(self, booking_service, appointment, notifier):
        booking_service.update_status(appointment.id, "cancelled")

        assert notifier.sent == [{"kind": "cancellation", "phone": PATIENT_PHONE}]

    def test_notes_only_update(self, booking_service, appointment, notifier):
        updated = booking_service.update_status(appointment.id, "pending", notes="Bring X-ray reports")

        assert updated.status == "pending"
        assert updated.notes == "Bring X-ray reports"
        assert notifier.sent == []

    def test_unknown_status_value(self, booking_service, appointment):
        with pytest.raises(ValidationError):
            booking_service.update_status(appointment.id, "archived")

    def test_unknown_appointment(self, booking_service):
        with pytest.raises(NotFoundError):
            booking_service.update_status(9999, "confirmed")


class TestCancellation:

    def test_owner_cancels_pending_without_sms(self, booking_service, appointment, patient, notifier):
        cancelled = booking_service.cancel(appointment.id, patient)

        assert cancelled.status == "cancelled"
        assert notifier.sent == []

    def test_owner_can_cancel_confirmed(self, booking_service, appointment, patient):
        booking_service.update_status(appointment.id, "confirmed")

        assert booking_service.cancel(appointment.id, patient).status == "cancelled"

    def test_admin_cancel_notifies_owner(self, booking_service, appointment, admin, notifier):
        booking_service.cancel(appointment.id, admin)

        assert notifier.sent == [{"kind": "cancellation", "phone": PATIENT_PHONE}]

    def test_other_patient_cannot_cancel(self, booking_service, appointment, patient, make_user):
        with pytest.raises(PermissionDeniedError):
            booking_service.cancel(appointment.id, make_user())

        assert [a.status for a in booking_service.list_for_user(patient)] == ["pending"]

    def test_cancelling_twice_is_conflict(self, booking_service, appointment, patient):
        booking_service.cancel(appointment.id, patient)

        with pytest.raises(ConflictError, match="already cancelled"):
            booking_service.cancel(appointment.id, patient)

    def test_cannot_cancel_completed(self, booking_service, appointment, patient):
        booking_service.update_status(appointment.id, "confirmed")
        booking_service.update_status(appointment.id, "completed")

        with pytest.raises(ConflictError, match="already completed"):
            booking_service.cancel(appointment.id, patient)

    def test_missing_appointment(self, booking_service, patient):
        with pytest.raises(NotFoundError):
            booking_service.cancel(12345, patient)


class TestBlocking:

    def test_block_cancels_active_appointments_one_sms_each(
        self, booking_service, patient, appointment, notifier
    ):
        second = booking_service.book(patient, CHRISTMAS, AFTERNOON_SLOT)
        booking_service.update_status(second.id, "confirmed")
        done = booking_service.book(patient, CHRISTMAS, "11:00 AM - 11:50 AM")
        booking_service.update_status(done.id, "confirmed")
        booking_service.update_status(done.id, "completed")
        notifier.sent.clear()

        user, cancelled = booking_service.set_user_blocked(patient.id, True)

        assert user.is_blocked
        assert cancelled == 2
        assert notifier.sent == [{"kind": "cancellation", "phone": PATIENT_PHONE}] * 2
        statuses = {a.id: a.status for a in booking_service.list_for_user(patient)}
        assert statuses == {appointment.id: "cancelled", second.id: "cancelled", done.id: "completed"}

    def test_blocked_slot_becomes_free(self, booking_service, slot_calculator, patient, appointment):
        booking_service.set_user_blocked(patient.id, True)

        assert not any(s.is_booked for s in slot_calculator.get_slots(CHRISTMAS))

    def test_unblock_restores_booking(self, booking_service, patient, notifier):
        booking_service.set_user_blocked(patient.id, True)
        user, cancelled = booking_service.set_user_blocked(patient.id, False)

        assert not user.is_blocked
        assert cancelled == 0
        booking_service.book(user, CHRISTMAS, AFTERNOON_SLOT)  # Should not raise

    def test_admin_cannot_be_blocked(self, booking_service, admin):
        with pytest.raises(ValidationError, match="Cannot block admin"):
            booking_service.set_user_blocked(admin.id, True)

    def test_unknown_user(self, booking_service):
        with pytest.raises(NotFoundError):
            booking_service.set_user_blocked(4242, True)


class TestConcurrentStatusChange:
    """A status read by one request may be changed by another before it writes."""

    @staticmethod
    def change_status_after_read(session_factory, status):
        """Wrap the appointment read so another session commits ``status`` right after it."""
        original = BookingService._get_for_update

        def read_then_change(db, appointment_id):
            appointment = original(db, appointment_id)
            with session_factory() as other:
                other.query(Appointment).filter(Appointment.id == appointment_id).update({"status": status})
                other.commit()
            return appointment

        return patch.object(BookingService, "_get_for_update", side_effect=read_then_change)

    def stored_status(self, session_factory, appointment_id):
        with session_factory() as db:
            return db.get(Appointment, appointment_id).status

    def test_confirm_does_not_overwrite_concurrent_cancel(
        self, booking_service, appointment, session_factory, notifier
    ):
        with self.change_status_after_read(session_factory, "cancelled"):
            with pytest.raises(ConflictError, match="changed by another request") as exc_info:
                booking_service.update_status(appointment.id, "confirmed")

        assert exc_info.value.status_code == 409
        assert self.stored_status(session_factory, appointment.id) == "cancelled"
        assert notifier.sent == []

    def test_cancel_does_not_overwrite_concurrent_completion(
        self, booking_service, appointment, patient, session_factory
    ):
        with self.change_status_after_read(session_factory, "completed"):
            with pytest.raises(ConflictError):
                booking_service.cancel(appointment.id, patient)

        assert self.stored_status(session_factory, appointment.id) == "completed"

    def test_resurrecting_cancelled_slot_after_rebooking_is_conflict(
        self, booking_service, appointment, patient, make_user, session_factory
    ):
        """The unique index still holds if a stale status slips through."""
        booking_service.cancel(appointment.id, patient)
        rebooked = booking_service.book(make_user(), CHRISTMAS, MORNING_SLOT)

        with session_factory() as db:
            stale = db.get(Appointment, appointment.id)
            stale.status = "confirmed"
            with pytest.raises(ConflictError, match="already booked"):
                BookingService._commit(db)

        assert self.stored_status(session_factory, appointment.id) == "cancelled"
        assert self.stored_status(session_factory, rebooked.id) == "pending"
