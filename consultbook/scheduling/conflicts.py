"""Overlap checks between a proposed booking and an advisor's scheduled appointments."""

from datetime import datetime

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from consultbook.models.appointment import Appointment
from consultbook.scheduling.state_machine import AppointmentStatus


def intervals_overlap(first_start: datetime, first_end: datetime, second_start: datetime, second_end: datetime) -> bool:
    """Half-open interval test; touching intervals do not overlap."""
    return first_start < second_end and first_end > second_start


def conflicts_with(new_start: datetime, new_end: datetime, existing_start: datetime, existing_end: datetime) -> bool:
    starts_inside = existing_start <= new_start < existing_end
    ends_inside = existing_start < new_end <= existing_end
    contains_existing = new_start <= existing_start and existing_end <= new_end
    return starts_inside or ends_inside or contains_existing


def find_conflicting_appointment(
    db: Session,
    advisor_id: int,
    start: datetime,
    end: datetime,
    exclude_id: int | None = None,
) -> Appointment | None:
    query = db.query(Appointment).filter(
        Appointment.advisor_id == advisor_id,
        Appointment.status == AppointmentStatus.SCHEDULED.value,
        or_(
            # New appointment starts during an existing one
            and_(Appointment.date_time <= start, Appointment.end_time > start),
            # New appointment ends during an existing one
            and_(Appointment.date_time < end, Appointment.end_time >= end),
            # New appointment contains an existing one
            and_(Appointment.date_time >= start, Appointment.end_time <= end),
        ),
    )
    if exclude_id is not None:
        query = query.filter(Appointment.id != exclude_id)

    return query.order_by(Appointment.date_time.asc()).first()


def has_conflict(
    db: Session,
    advisor_id: int,
    start: datetime,
    end: datetime,
    exclude_id: int | None = None,
) -> bool:
    return find_conflicting_appointment(db, advisor_id, start, end, exclude_id=exclude_id) is not None
