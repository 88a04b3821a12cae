"""Slot availability for a calendar date.

The clinic works a fixed daily schedule: a morning block and an afternoon
block of 50-minute slots around an unlisted lunch break. A slot is taken
when a pending or confirmed appointment holds it.
"""
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import List, Sequence

from sqlalchemy.orm import sessionmaker

from clinic_booking import config
from clinic_booking.api.database_models import ACTIVE_STATUSES, Appointment


class TimeOfDay(str, Enum):
    """Schedule block a slot belongs to."""
    MORNING = "morning"
    AFTERNOON = "afternoon"


@dataclass(frozen=True)
class SlotAvailability:
    slot_id: str
    is_booked: bool
    period: TimeOfDay


class SlotCalculator:
    """Computes bookable slots; read-only, safe to call unauthenticated."""

    def __init__(
        self,
        session_factory: sessionmaker,
        morning_slots: Sequence[str] = tuple(config.MORNING_SLOTS),
        afternoon_slots: Sequence[str] = tuple(config.AFTERNOON_SLOTS),
        closed_weekday: int = config.CLOSED_WEEKDAY
    ):
        self.SessionLocal = session_factory
        self.morning_slots = list(morning_slots)
        self.afternoon_slots = list(afternoon_slots)
        self.closed_weekday = closed_weekday

    @property
    def time_slots(self) -> List[str]:
        """All slot ids in schedule order."""
        return self.morning_slots + self.afternoon_slots

    def is_closed_day(self, day: date) -> bool:
        return day.weekday() == self.closed_weekday

    def is_valid_slot(self, slot_id: str) -> bool:
        return slot_id in self.time_slots

    def slot_order(self, slot_id: str) -> int:
        """Position in the daily schedule (unknown ids sort last)."""
        try:
            return self.time_slots.index(slot_id)
        except ValueError:
            return len(self.time_slots)

    def period_of(self, slot_id: str) -> TimeOfDay:
        return TimeOfDay.MORNING if slot_id in self.morning_slots else TimeOfDay.AFTERNOON

    def get_slots(self, day: date) -> List[SlotAvailability]:
        """
        Every slot of ``day`` with its booked flag.

        Returns an empty list on the closed weekday (clinic closed).
        """
        if self.is_closed_day(day):
            return []

        with self.SessionLocal() as db:
            rows = db.query(Appointment.time_slot).filter(
                Appointment.date == day,
                Appointment.status.in_(ACTIVE_STATUSES)
            ).all()

        booked = {row.time_slot for row in rows}

        return [
            SlotAvailability(
                slot_id=slot_id,
                is_booked=slot_id in booked,
                period=self.period_of(slot_id)
            )
            for slot_id in self.time_slots
        ]
