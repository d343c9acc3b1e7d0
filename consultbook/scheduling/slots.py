"""Bookable slot generation for one advisor on one calendar day."""

from datetime import date, datetime, time, timedelta

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from consultbook.models.appointment import Appointment
from consultbook.scheduling.availability import TimeWindow
from consultbook.scheduling.conflicts import intervals_overlap
from consultbook.scheduling.state_machine import AppointmentStatus

SLOT_INCREMENT_MINUTES = 30
OCCUPYING_STATUSES = (
    AppointmentStatus.SCHEDULED.value,
    AppointmentStatus.PENDING_ADVISOR_CONFIRMATION.value,
)


class Slot(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime


def iterate_window_slots(day: date, window: TimeWindow) -> list[Slot]:
    slots: list[Slot] = []
    current, window_end = window.bounds_on(day)
    increment = timedelta(minutes=SLOT_INCREMENT_MINUTES)

    while current + increment <= window_end:
        slots.append(Slot(start=current, end=current + increment))
        current += increment

    return slots


def get_occupied_intervals(db: Session, advisor_id: int, day: date) -> list[tuple[datetime, datetime]]:
    day_start = datetime.combine(day, time.min)
    day_end = day_start + timedelta(days=1)

    appointments = db.query(Appointment.date_time, Appointment.end_time, Appointment.duration).filter(
        Appointment.advisor_id == advisor_id,
        Appointment.date_time >= day_start,
        Appointment.date_time < day_end,
        Appointment.status.in_(OCCUPYING_STATUSES),
    ).all()

    occupied: list[tuple[datetime, datetime]] = []
    for appointment_start, appointment_end, duration in appointments:
        if appointment_end is None:
            appointment_end = appointment_start + timedelta(minutes=duration or SLOT_INCREMENT_MINUTES)
        occupied.append((appointment_start, appointment_end))

    return occupied


def filter_free_slots(candidates: list[Slot], occupied: list[tuple[datetime, datetime]]) -> list[Slot]:
    return [
        slot
        for slot in candidates
        if not any(intervals_overlap(slot.start, slot.end, busy_start, busy_end) for busy_start, busy_end in occupied)
    ]


def generate_available_slots(db: Session, advisor_id: int, day: date, windows: list[TimeWindow]) -> list[Slot]:
    candidates: list[Slot] = []
    for window in windows:
        candidates.extend(iterate_window_slots(day, window))
    candidates.sort(key=lambda slot: slot.start)

    if not candidates:
        return []

    return filter_free_slots(candidates, get_occupied_intervals(db, advisor_id, day))
