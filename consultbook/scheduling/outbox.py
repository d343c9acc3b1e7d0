"""Transactional notification outbox.

Notifications are inserted in the same transaction as the appointment change
they describe and delivered after commit. Undelivered rows stay pending and
are retried by the next dispatch until they run out of attempts.
"""

import logging
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel
from sqlalchemy.orm import Session

from consultbook.models.appointment import Appointment
from consultbook.models.notification import NotificationOutbox

logger = logging.getLogger(__name__)

PENDING = 'pending'
DELIVERED = 'delivered'
FAILED = 'failed'


class NotificationKind(str, Enum):
    BOOKING_CONFIRMED = 'booking-confirmed'
    BOOKING_FAILED = 'booking-failed'
    CONFIRMATION_GRANTED = 'confirmation-granted'
    CANCELLATION = 'cancellation'
    COMPLETION = 'completion'
    ADVICE_ADDED = 'advice-added'
    FOLLOW_UP_CREATED = 'follow-up-created'
    DOCUMENT_UPLOADED = 'document-uploaded'
    REFUND_ISSUED = 'refund-issued'


class DispatchReport(BaseModel):
    delivered: int = 0
    failed: int = 0
    dead_lettered: int = 0


def appointment_payload(appointment: Appointment, **extra) -> dict:
    payload = {
        'appointmentId': appointment.id,
        'clientId': appointment.client_id,
        'advisorId': appointment.advisor_id,
        'dateTime': appointment.date_time.isoformat() if appointment.date_time else None,
        'endTime': appointment.end_time.isoformat() if appointment.end_time else None,
        'type': appointment.type,
        'status': appointment.status,
    }
    payload.update(extra)
    return payload


def enqueue_notification(db: Session, kind: NotificationKind, payload: dict) -> NotificationOutbox:
    entry = NotificationOutbox(kind=NotificationKind(kind).value, payload=payload, status=PENDING, attempts=0)
    db.add(entry)
    return entry


def dispatch_pending_notifications(session_factory, notifier, limit: int = 100, max_attempts: int = 5) -> DispatchReport:
    """Deliver up to ``limit`` pending notifications, least-attempted first.

    A row that fails ``max_attempts`` times is marked ``failed`` and no longer
    selected.
    """
    report = DispatchReport()
    db = session_factory()
    try:
        entries = db.query(NotificationOutbox).filter(
            NotificationOutbox.status == PENDING,
        ).order_by(
            NotificationOutbox.attempts.asc(),
            NotificationOutbox.id.asc(),
        ).limit(limit).all()

        for entry in entries:
            entry.attempts = (entry.attempts or 0) + 1
            try:
                notifier.notify(entry.kind, dict(entry.payload or {}))
            except Exception as exc:
                logger.exception('Delivery of notification %s (%s) failed', entry.id, entry.kind)
                entry.last_error = str(exc)[:500]
                report.failed += 1
                if entry.attempts >= max_attempts:
                    entry.status = FAILED
                    report.dead_lettered += 1
                    logger.error('Notification %s (%s) gave up after %s attempts', entry.id, entry.kind, entry.attempts)
            else:
                entry.status = DELIVERED
                entry.delivered_at = datetime.now(timezone.utc).replace(tzinfo=None)
                entry.last_error = None
                report.delivered += 1
            db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    return report
