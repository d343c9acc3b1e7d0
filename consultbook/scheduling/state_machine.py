"""Appointment statuses, allowed transitions and the time rules attached to them."""

from datetime import datetime, timedelta
from enum import Enum

from consultbook.core.errors import InvalidStateTransitionError, ValidationError
from consultbook.scheduling.availability import DayAvailability


class AppointmentStatus(str, Enum):
    PENDING_PAYMENT = 'pending-payment'
    PENDING_ADVISOR_CONFIRMATION = 'pending-advisor-confirmation'
    SCHEDULED = 'scheduled'
    COMPLETED = 'completed'
    CANCELED = 'canceled'
    NO_SHOW = 'no-show'


class AppointmentType(str, Enum):
    VIDEO = 'video'
    AUDIO = 'audio'
    CHAT = 'chat'


ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING_ADVISOR_CONFIRMATION: frozenset(
        {AppointmentStatus.SCHEDULED, AppointmentStatus.CANCELED}
    ),
    AppointmentStatus.PENDING_PAYMENT: frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CANCELED}),
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 120
DURATION_STEP_MINUTES = 15

CONFIRMATION_GRACE = timedelta(hours=1)
URGENT_BOOKING_WINDOW = timedelta(hours=24)
AUTO_COMPLETE_AFTER = timedelta(minutes=10)
JOIN_OPENS_BEFORE_START = timedelta(minutes=5)
JOIN_CLOSES_AFTER_START = timedelta(minutes=30)

EXPIRED_CONFIRMATION_REASON = 'Advisor did not confirm in time'
AUTO_COMPLETION_SUMMARY = (
    'This consultation was automatically marked as completed when both participants left the session.'
)
PARTICIPANT_LEFT = 'left'


def validate_duration(duration) -> int:
    if (
        isinstance(duration, bool)
        or not isinstance(duration, int)
        or duration % DURATION_STEP_MINUTES != 0
        or not MIN_DURATION_MINUTES <= duration <= MAX_DURATION_MINUTES
    ):
        raise ValidationError(
            f'Duration must be a multiple of {DURATION_STEP_MINUTES} minutes '
            f'between {MIN_DURATION_MINUTES} and {MAX_DURATION_MINUTES}.',
            code='invalid_duration',
        )
    return duration


def parse_status(value) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError as exc:
        raise ValidationError(f'Unknown appointment status {value!r}.', code='invalid_status') from exc


def parse_appointment_type(value) -> AppointmentType:
    try:
        return AppointmentType(value)
    except ValueError as exc:
        raise ValidationError('Appointment type must be video, audio or chat.', code='invalid_type') from exc


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[AppointmentStatus(current)]


def ensure_transition(current, target) -> AppointmentStatus:
    current_status = AppointmentStatus(current)
    target_status = AppointmentStatus(target)
    if not can_transition(current_status, target_status):
        raise InvalidStateTransitionError(
            f'Cannot change appointment status from {current_status.value} to {target_status.value}.',
            current=current_status.value,
            requested=target_status.value,
        )
    return target_status


def compute_end_time(start: datetime, duration: int) -> datetime:
    return start + timedelta(minutes=duration)


def compute_confirmation_deadline(day: DayAvailability, appointment_start: datetime, now: datetime) -> datetime:
    """Deadline by which the advisor has to confirm a new booking.

    Bookings starting within 24 hours, and bookings on a day without working
    hours, get one hour from now. Otherwise the advisor has until one hour
    after the start of their first working window on the appointment's day.
    """
    if appointment_start - now < URGENT_BOOKING_WINDOW:
        return now + CONFIRMATION_GRACE

    day_start = day.first_window_start
    if day_start is None:
        return now + CONFIRMATION_GRACE

    return datetime.combine(appointment_start.date(), day_start) + CONFIRMATION_GRACE


def confirmation_expired(deadline: datetime | None, now: datetime) -> bool:
    return deadline is not None and now > deadline


def time_remaining(deadline: datetime, now: datetime) -> dict:
    remaining_minutes = max(0, int((deadline - now).total_seconds() // 60))
    return {
        'hours': remaining_minutes // 60,
        'minutes': remaining_minutes % 60,
        'totalMinutes': remaining_minutes,
    }


def record_participant_exit(participant_status: dict | None, user_id: int, now: datetime) -> dict:
    updated = dict(participant_status or {})
    updated[str(user_id)] = {'status': PARTICIPANT_LEFT, 'exitTime': now.isoformat()}
    return updated


def both_participants_left(participant_status: dict | None, advisor_id: int, client_id: int) -> bool:
    participant_status = participant_status or {}
    return all(
        (participant_status.get(str(user_id)) or {}).get('status') == PARTICIPANT_LEFT
        for user_id in (advisor_id, client_id)
    )


def should_auto_complete(
    status,
    participant_status: dict | None,
    advisor_id: int,
    client_id: int,
    start: datetime,
    now: datetime,
) -> bool:
    return (
        AppointmentStatus(status) is AppointmentStatus.SCHEDULED
        and both_participants_left(participant_status, advisor_id, client_id)
        and now - start >= AUTO_COMPLETE_AFTER
    )


def check_join_window(status, start: datetime, end: datetime | None, now: datetime) -> None:
    current = AppointmentStatus(status)
    if current is not AppointmentStatus.SCHEDULED:
        raise ValidationError(
            f'Cannot join consultation with status "{current.value}".',
            code='consultation_not_joinable',
            status=current.value,
        )

    if start - now > JOIN_OPENS_BEFORE_START:
        raise ValidationError(
            'Consultation is not ready yet.',
            code='consultation_not_ready',
            startsInMinutes=int((start - now).total_seconds() // 60),
        )

    if now - start > JOIN_CLOSES_AFTER_START:
        raise ValidationError('Consultation time has expired.', code='consultation_expired')

    if end is not None and now > end:
        raise ValidationError('Consultation has already ended.', code='consultation_ended')
