"""Appointment lifecycle operations.

``AppointmentLifecycle`` is created once at start-up with its collaborators
(session factory, notifier, payment gateway, room token issuer) and shared by
every request. Each operation reads, changes and writes a single appointment
in one transaction. Notifications are queued in that same transaction and
delivered after commit; refunds run after commit too. Neither can undo a
committed status change. Their failures show up as ``warnings`` on the result.

Every path that can make an appointment ``scheduled`` holds the advisor's lock
and re-runs the conflict check right before writing, so two requests in this
process cannot both schedule overlapping appointments for the same advisor.
"""

import logging
import math
from collections.abc import Callable
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone
from threading import Lock
from weakref import WeakValueDictionary

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from consultbook.core import config
from consultbook.core.errors import (
    AuthorizationError,
    ConflictError,
    DomainError,
    ExpiredError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from consultbook.database import SessionLocal
from consultbook.models.appointment import Appointment
from consultbook.models.user import User
from consultbook.scheduling.availability import resolve_day
from consultbook.scheduling.collaborators import (
    PAYMENT_COMPLETED,
    PAYMENT_REFUNDED,
    JitsiTokenIssuer,
    LoggingNotifier,
    Notifier,
    PaymentGateway,
    SessionTokenIssuer,
    SqlPaymentGateway,
    room_name_for,
)
from consultbook.scheduling.conflicts import find_conflicting_appointment
from consultbook.scheduling.outbox import NotificationKind, appointment_payload, dispatch_pending_notifications, enqueue_notification
from consultbook.scheduling.schemas import (
    AdviceEntry,
    AppointmentPage,
    AppointmentRecord,
    AvailabilityView,
    CalendarEvent,
    CalendarView,
    CallerIdentity,
    ChatMessage,
    ConsultationStatus,
    DocumentEntry,
    FollowUpPlan,
    JoinTicket,
    OperationResult,
    PendingConfirmation,
    PendingConfirmationPage,
    RoomExitResult,
    SweepReport,
)
from consultbook.scheduling.slots import generate_available_slots
from consultbook.scheduling.state_machine import (
    AUTO_COMPLETION_SUMMARY,
    EXPIRED_CONFIRMATION_REASON,
    AppointmentStatus,
    both_participants_left,
    check_join_window,
    compute_confirmation_deadline,
    compute_end_time,
    confirmation_expired,
    ensure_transition,
    parse_appointment_type,
    parse_status,
    record_participant_exit,
    should_auto_complete,
    time_remaining,
    validate_duration,
)

logger = logging.getLogger(__name__)

CLIENT_ROLE = 'client'
ADVISOR_ROLE = 'advisor'
ADMIN_ROLE = 'admin'
SYSTEM_ACTOR = 'system'

DEFAULT_DURATION_MINUTES = 30
FOLLOW_UP_PREFIX = 'Follow-up to appointment on'

REFUND_FAILED = 'refund_failed'
NOTIFICATION_DELIVERY_FAILED = 'notification_delivery_failed'

STATUS_COLORS = {
    AppointmentStatus.SCHEDULED.value: '#4a90e2',
    AppointmentStatus.COMPLETED.value: '#2ecc71',
    AppointmentStatus.CANCELED.value: '#e74c3c',
    AppointmentStatus.PENDING_PAYMENT.value: '#f39c12',
    AppointmentStatus.PENDING_ADVISOR_CONFIRMATION.value: '#9b59b6',
    AppointmentStatus.NO_SHOW.value: '#95a5a6',
}
DEFAULT_STATUS_COLOR = '#3498db'


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def status_color(status: str) -> str:
    return STATUS_COLORS.get(status, DEFAULT_STATUS_COLOR)


def actor_for(caller: CallerIdentity) -> str:
    if caller.role in (CLIENT_ROLE, ADVISOR_ROLE):
        return caller.role
    return SYSTEM_ACTOR


class AppointmentLifecycle:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: Notifier,
        payments: PaymentGateway,
        token_issuer: SessionTokenIssuer,
        clock: Callable[[], datetime] = utcnow,
        notification_batch_size: int = 100,
        notification_max_attempts: int = 5,
    ):
        self._session_factory = session_factory
        self._notifier = notifier
        self._payments = payments
        self._token_issuer = token_issuer
        self._clock = clock
        self._notification_batch_size = notification_batch_size
        self._notification_max_attempts = notification_max_attempts
        # Entries disappear once no caller holds the lock.
        self._advisor_locks: WeakValueDictionary[int, Lock] = WeakValueDictionary()
        self._advisor_locks_guard = Lock()

    # -- plumbing ---------------------------------------------------------

    @contextmanager
    def _transaction(self):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except StaleDataError as exc:
            db.rollback()
            raise ConflictError(
                'The appointment was changed by another request. Reload and retry.',
                code='concurrent_modification',
            ) from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def _read(self):
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    def _advisor_lock(self, advisor_id: int) -> Lock:
        with self._advisor_locks_guard:
            lock = self._advisor_locks.get(advisor_id)
            if lock is None:
                lock = Lock()
                self._advisor_locks[advisor_id] = lock
            return lock

    @contextmanager
    def _locked_appointment(self, appointment_id: int):
        with self._read() as db:
            advisor_id = db.query(Appointment.advisor_id).filter(Appointment.id == appointment_id).scalar()
        if advisor_id is None:
            raise NotFoundError('Appointment not found.')

        with self._advisor_lock(advisor_id):
            with self._transaction() as db:
                yield db, self._load(db, appointment_id)

    def _load(self, db: Session, appointment_id: int) -> Appointment:
        appointment = db.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFoundError('Appointment not found.')
        return appointment

    def _lookup_user(self, db: Session, user_id: int, role: str) -> User:
        user = db.get(User, user_id)
        if user is None or user.role != role:
            raise NotFoundError(f'{role.capitalize()} not found.')
        return user

    @staticmethod
    def _snapshot(db: Session, appointment: Appointment) -> AppointmentRecord:
        db.flush()
        return AppointmentRecord.model_validate(appointment)

    @staticmethod
    def _ensure_party(caller: CallerIdentity, appointment: Appointment, allow_admin: bool = True) -> None:
        if allow_admin and caller.role == ADMIN_ROLE:
            return
        if caller.role == ADVISOR_ROLE and caller.id == appointment.advisor_id:
            return
        if caller.role == CLIENT_ROLE and caller.id == appointment.client_id:
            return
        raise AuthorizationError('You are not a participant of this appointment.')

    @staticmethod
    def _ensure_assigned_advisor(caller: CallerIdentity, appointment: Appointment, allow_admin: bool = True) -> None:
        if allow_admin and caller.role == ADMIN_ROLE:
            return
        if caller.role != ADVISOR_ROLE or caller.id != appointment.advisor_id:
            raise AuthorizationError('You are not the advisor for this appointment.')

    @staticmethod
    def _ensure_completed(appointment: Appointment) -> None:
        if appointment.status != AppointmentStatus.COMPLETED.value:
            raise InvalidStateTransitionError(
                'This is only possible for completed consultations.',
                code='only_completed',
                status=appointment.status,
            )

    def _deliver_notifications(self) -> list[str]:
        try:
            report = dispatch_pending_notifications(
                self._session_factory,
                self._notifier,
                limit=self._notification_batch_size,
                max_attempts=self._notification_max_attempts,
            )
        except SQLAlchemyError:
            logger.exception('Notification outbox could not be drained')
            return [NOTIFICATION_DELIVERY_FAILED]
        return [NOTIFICATION_DELIVERY_FAILED] if report.failed else []

    def _refund(self, appointment_id: int, transaction_id: str) -> list[str]:
        try:
            payment = self._payments.find_payment(transaction_id)
            if payment is None or payment.status == PAYMENT_REFUNDED:
                return []
            self._payments.mark_refunded(transaction_id)

            with self._transaction() as db:
                appointment = db.get(Appointment, appointment_id)
                if appointment is not None:
                    appointment.payment_status = PAYMENT_REFUNDED
                    enqueue_notification(
                        db,
                        NotificationKind.REFUND_ISSUED,
                        appointment_payload(appointment, transactionId=transaction_id),
                    )
        except Exception:
            logger.exception('Refund of payment %s for appointment %s failed', transaction_id, appointment_id)
            return [REFUND_FAILED]

        logger.info('Refunded payment %s for appointment %s', transaction_id, appointment_id)
        return []

    def _after_commit(self, refund: tuple[int, str] | None = None) -> list[str]:
        warnings: list[str] = []
        if refund is not None:
            warnings.extend(self._refund(*refund))
        warnings.extend(self._deliver_notifications())
        return warnings

    # -- transitions --------------------------------------------------------

    def _cancel(self, db: Session, appointment: Appointment, reason: str | None, actor: str) -> tuple[int, str] | None:
        ensure_transition(appointment.status, AppointmentStatus.CANCELED)
        previous = appointment.status
        appointment.status = AppointmentStatus.CANCELED.value
        if reason:
            appointment.cancellation_reason = reason
        enqueue_notification(
            db,
            NotificationKind.CANCELLATION,
            appointment_payload(appointment, cancelledBy=actor, reason=reason, previousStatus=previous),
        )
        logger.info('Appointment %s canceled by %s (was %s)', appointment.id, actor, previous)

        if appointment.payment_transaction_id:
            return appointment.id, appointment.payment_transaction_id
        return None

    def _schedule(self, db: Session, appointment: Appointment) -> None:
        ensure_transition(appointment.status, AppointmentStatus.SCHEDULED)
        conflict = find_conflicting_appointment(
            db,
            appointment.advisor_id,
            appointment.date_time,
            appointment.end_time,
            exclude_id=appointment.id,
        )
        if conflict is not None:
            raise ConflictError(
                'The advisor already has a scheduled appointment at this time.',
                code='advisor_not_available',
                conflictingAppointmentId=conflict.id,
            )

        previous = appointment.status
        appointment.status = AppointmentStatus.SCHEDULED.value
        enqueue_notification(
            db,
            NotificationKind.CONFIRMATION_GRANTED,
            appointment_payload(appointment, previousStatus=previous),
        )
        logger.info('Appointment %s scheduled (was %s)', appointment.id, previous)

    def _complete(self, db: Session, appointment: Appointment, summary: str | None) -> None:
        ensure_transition(appointment.status, AppointmentStatus.COMPLETED)
        appointment.status = AppointmentStatus.COMPLETED.value
        if summary:
            appointment.consultation_summary = summary
        enqueue_notification(db, NotificationKind.COMPLETION, appointment_payload(appointment))
        logger.info('Appointment %s completed', appointment.id)

    def _append_advices(self, db: Session, appointment: Appointment, advices: list | None) -> list[dict]:
        now = self._clock()
        accepted = []
        for advice in advices or []:
            entry = advice if isinstance(advice, AdviceEntry) else AdviceEntry.model_validate(advice)
            if entry.is_complete():
                entry = entry.model_copy(update={'created_at': now})
                accepted.append(entry.model_dump(mode='json', by_alias=True))

        if accepted:
            appointment.advices = [*(appointment.advices or []), *accepted]
            enqueue_notification(
                db,
                NotificationKind.ADVICE_ADDED,
                appointment_payload(appointment, adviceCount=len(accepted)),
            )
        return accepted

    def _spawn_follow_up(
        self,
        db: Session,
        original: Appointment,
        follow_up_date: datetime,
        duration: int,
        notes: str | None,
    ) -> Appointment:
        advisor = original.advisor
        follow_up = Appointment(
            client_id=original.client_id,
            advisor_id=original.advisor_id,
            date_time=follow_up_date,
            end_time=compute_end_time(follow_up_date, duration),
            duration=duration,
            type=original.type,
            short_description=(
                f'{FOLLOW_UP_PREFIX} {original.date_time:%Y-%m-%d} - {notes or "No notes provided"}'
            ),
            notes='',
            status=AppointmentStatus.PENDING_PAYMENT.value,
            payment_amount=advisor.consultation_fee if advisor is not None else None,
            payment_status='pending',
            advices=[],
            documents=[],
            chat_log=[],
            participant_status={},
        )
        db.add(follow_up)
        db.flush()
        enqueue_notification(
            db,
            NotificationKind.FOLLOW_UP_CREATED,
            appointment_payload(follow_up, originalAppointmentId=original.id),
        )
        logger.info('Follow-up appointment %s created from %s', follow_up.id, original.id)
        return follow_up

    # -- booking ------------------------------------------------------------

    def create_appointment(
        self,
        caller: CallerIdentity,
        advisor_id: int,
        date_time: datetime,
        appointment_type: str,
        short_description: str,
        notes: str | None = None,
        duration: int = DEFAULT_DURATION_MINUTES,
    ) -> OperationResult:
        validate_duration(duration)
        start = as_utc_naive(date_time).replace(second=0, microsecond=0)
        end = compute_end_time(start, duration)

        with self._read() as db:
            self._lookup_user(db, advisor_id, ADVISOR_ROLE)

        try:
            with self._advisor_lock(advisor_id):
                with self._transaction() as db:
                    advisor = self._lookup_user(db, advisor_id, ADVISOR_ROLE)
                    self._lookup_user(db, caller.id, CLIENT_ROLE)
                    kind = parse_appointment_type(appointment_type)
                    description = (short_description or '').strip()
                    if not description:
                        raise ValidationError('A short description is required.', code='description_required')

                    if find_conflicting_appointment(db, advisor_id, start, end) is not None:
                        raise ConflictError(
                            'The advisor is not available at the requested time.',
                            code='advisor_not_available',
                        )

                    day = resolve_day(advisor.availability, start.date())
                    if not day.is_available:
                        raise ConflictError(
                            'The advisor does not work on the requested day.',
                            code='advisor_not_available_day',
                        )
                    if not day.covers(start, end):
                        raise ConflictError(
                            "The requested time is outside the advisor's working hours.",
                            code='outside_working_hours',
                        )

                    now = self._clock()
                    appointment = Appointment(
                        client_id=caller.id,
                        advisor_id=advisor_id,
                        date_time=start,
                        end_time=end,
                        duration=duration,
                        type=kind.value,
                        short_description=description,
                        notes=notes or '',
                        status=AppointmentStatus.PENDING_ADVISOR_CONFIRMATION.value,
                        advisor_confirmation_expires=compute_confirmation_deadline(day, start, now),
                        advices=[],
                        documents=[],
                        chat_log=[],
                        participant_status={},
                    )
                    db.add(appointment)
                    db.flush()
                    enqueue_notification(
                        db,
                        NotificationKind.BOOKING_CONFIRMED,
                        appointment_payload(appointment, recipients=[caller.id, advisor_id]),
                    )
                    record = self._snapshot(db, appointment)
        except ConflictError as exc:
            if exc.code == 'advisor_not_available':
                self._record_booking_failure(caller, advisor_id, start, appointment_type, exc.message)
            raise

        logger.info(
            'Appointment %s booked by client %s with advisor %s, confirm by %s',
            record.id,
            caller.id,
            advisor_id,
            record.advisor_confirmation_expires,
        )
        return OperationResult(appointment=record, warnings=self._after_commit())

    def _record_booking_failure(
        self,
        caller: CallerIdentity,
        advisor_id: int,
        start: datetime,
        appointment_type: str,
        reason: str,
    ) -> None:
        try:
            with self._transaction() as db:
                enqueue_notification(
                    db,
                    NotificationKind.BOOKING_FAILED,
                    {
                        'clientId': caller.id,
                        'advisorId': advisor_id,
                        'dateTime': start.isoformat(),
                        'type': appointment_type,
                        'error': reason,
                    },
                )
        except SQLAlchemyError:
            logger.exception('Booking failure notice for client %s could not be queued', caller.id)
            return
        self._deliver_notifications()

    def confirm_appointment(self, caller: CallerIdentity, appointment_id: int) -> OperationResult:
        refund = None
        expired = False

        with self._locked_appointment(appointment_id) as (db, appointment):
            if caller.role != ADVISOR_ROLE or appointment.advisor_id != caller.id:
                raise AuthorizationError('Only the assigned advisor can confirm this appointment.')

            if appointment.status != AppointmentStatus.PENDING_ADVISOR_CONFIRMATION.value:
                raise InvalidStateTransitionError(
                    'This appointment is not waiting for confirmation.',
                    code='cannot_confirm',
                    status=appointment.status,
                )

            if confirmation_expired(appointment.advisor_confirmation_expires, self._clock()):
                refund = self._cancel(db, appointment, EXPIRED_CONFIRMATION_REASON, SYSTEM_ACTOR)
                expired = True
            else:
                self._schedule(db, appointment)
            record = self._snapshot(db, appointment)

        warnings = self._after_commit(refund)
        if expired:
            raise ExpiredError(
                'The confirmation deadline has passed; the appointment was canceled.',
                appointmentId=record.id,
                warnings=warnings,
            )
        return OperationResult(appointment=record, warnings=warnings)

    def update_appointment_status(
        self,
        caller: CallerIdentity,
        appointment_id: int,
        status: str,
        consultation_summary: str | None = None,
        cancellation_reason: str | None = None,
    ) -> OperationResult:
        target = parse_status(status)
        refund = None

        with self._locked_appointment(appointment_id) as (db, appointment):
            self._ensure_party(caller, appointment)
            ensure_transition(appointment.status, target)

            if target is AppointmentStatus.SCHEDULED:
                raise InvalidStateTransitionError(
                    'Appointments are scheduled by advisor confirmation or completed payment.',
                    code='schedule_not_direct',
                    status=appointment.status,
                )

            if target is AppointmentStatus.CANCELED:
                refund = self._cancel(db, appointment, cancellation_reason, actor_for(caller))
            elif target is AppointmentStatus.COMPLETED:
                self._complete(db, appointment, consultation_summary)
            else:
                appointment.status = target.value
                logger.info('Appointment %s marked %s', appointment.id, target.value)
            record = self._snapshot(db, appointment)

        return OperationResult(appointment=record, warnings=self._after_commit(refund))

    def complete_payment(self, appointment_id: int, transaction_id: str) -> OperationResult:
        payment = self._payments.find_payment(transaction_id)
        if payment is None:
            raise NotFoundError('Payment not found.', code='payment_not_found', transactionId=transaction_id)
        if payment.status != PAYMENT_COMPLETED:
            raise ValidationError(
                'The payment has not been completed.',
                code='payment_not_completed',
                transactionId=transaction_id,
                paymentStatus=payment.status,
            )

        with self._locked_appointment(appointment_id) as (db, appointment):
            if appointment.status != AppointmentStatus.PENDING_PAYMENT.value:
                raise InvalidStateTransitionError(
                    'This appointment is not waiting for payment.',
                    code='payment_not_pending',
                    status=appointment.status,
                )
            appointment.payment_transaction_id = transaction_id
            appointment.payment_status = PAYMENT_COMPLETED
            self._schedule(db, appointment)
            record = self._snapshot(db, appointment)

        return OperationResult(appointment=record, warnings=self._after_commit())

    def cleanup_expired_appointments(self) -> SweepReport:
        """Cancel every pending confirmation whose deadline has passed.

        Safe to call at any time and from any number of schedulers: each
        appointment is re-checked inside its own transaction, and a failure
        on one appointment does not stop the rest of the batch.
        """
        report = SweepReport()
        now = self._clock()

        with self._read() as db:
            expired_ids = [
                appointment_id
                for (appointment_id,) in db.query(Appointment.id).filter(
                    Appointment.status == AppointmentStatus.PENDING_ADVISOR_CONFIRMATION.value,
                    Appointment.advisor_confirmation_expires < now,
                ).order_by(Appointment.advisor_confirmation_expires.asc()).all()
            ]

        for appointment_id in expired_ids:
            try:
                refund = None
                canceled = False
                with self._locked_appointment(appointment_id) as (db, appointment):
                    if (
                        appointment.status == AppointmentStatus.PENDING_ADVISOR_CONFIRMATION.value
                        and confirmation_expired(appointment.advisor_confirmation_expires, now)
                    ):
                        refund = self._cancel(db, appointment, EXPIRED_CONFIRMATION_REASON, SYSTEM_ACTOR)
                        canceled = True

                if canceled:
                    report.canceled.append(appointment_id)
                if refund is not None:
                    warnings = self._refund(*refund)
                    if warnings:
                        report.warnings[appointment_id] = warnings
            except (DomainError, SQLAlchemyError):
                logger.exception('Expired appointment %s could not be canceled', appointment_id)
                report.failed.append(appointment_id)

        delivery_warnings = self._deliver_notifications()
        if delivery_warnings:
            for appointment_id in report.canceled:
                report.warnings.setdefault(appointment_id, []).extend(delivery_warnings)

        logger.info(
            'Cleaned up %s expired pending appointments (%s failed)',
            len(report.canceled),
            len(report.failed),
        )
        return report

    # -- consultation results ---------------------------------------------

    def schedule_follow_up(
        self,
        caller: CallerIdentity,
        appointment_id: int,
        follow_up_date: datetime,
        notes: str | None = None,
        duration: int = DEFAULT_DURATION_MINUTES,
    ) -> OperationResult:
        validate_duration(duration)
        follow_up_date = as_utc_naive(follow_up_date)
        if follow_up_date <= self._clock():
            raise ValidationError('Follow-up date must be in the future.', code='follow_up_in_past')

        with self._transaction() as db:
            original = self._load(db, appointment_id)
            self._ensure_assigned_advisor(caller, original)
            self._ensure_completed(original)

            original.follow_up_recommended = True
            original.follow_up_date = follow_up_date
            original.follow_up_notes = notes or ''
            follow_up = self._spawn_follow_up(db, original, follow_up_date, duration, notes)

            record = self._snapshot(db, original)
            follow_up_record = self._snapshot(db, follow_up)

        return OperationResult(appointment=record, follow_up=follow_up_record, warnings=self._after_commit())

    def update_consultation_results(
        self,
        caller: CallerIdentity,
        appointment_id: int,
        consultation_summary: str | None = None,
        advices: list | None = None,
        follow_up: FollowUpPlan | dict | None = None,
    ) -> OperationResult:
        plan = None
        if follow_up is not None:
            plan = follow_up if isinstance(follow_up, FollowUpPlan) else FollowUpPlan.model_validate(follow_up)
            if plan.recommended:
                if plan.follow_up_date is None:
                    raise ValidationError('A follow-up date is required.', code='follow_up_date_required')
                if plan.create_appointment:
                    validate_duration(plan.duration)

        follow_up_record = None
        with self._transaction() as db:
            appointment = self._load(db, appointment_id)
            self._ensure_assigned_advisor(caller, appointment, allow_admin=False)
            self._ensure_completed(appointment)

            if consultation_summary:
                appointment.consultation_summary = consultation_summary

            self._append_advices(db, appointment, advices)

            if plan is not None and plan.recommended:
                follow_up_date = as_utc_naive(plan.follow_up_date)
                appointment.follow_up_recommended = True
                appointment.follow_up_date = follow_up_date
                appointment.follow_up_notes = plan.notes or ''
                if plan.create_appointment:
                    spawned = self._spawn_follow_up(db, appointment, follow_up_date, plan.duration, plan.notes)
                    follow_up_record = self._snapshot(db, spawned)

            record = self._snapshot(db, appointment)

        return OperationResult(appointment=record, follow_up=follow_up_record, warnings=self._after_commit())

    def add_advices(self, caller: CallerIdentity, appointment_id: int, advices: list) -> OperationResult:
        if not advices:
            raise ValidationError('A non-empty list of advices is required.', code='invalid_advices')

        with self._transaction() as db:
            appointment = self._load(db, appointment_id)
            self._ensure_assigned_advisor(caller, appointment)
            self._ensure_completed(appointment)

            if not self._append_advices(db, appointment, advices):
                raise ValidationError('No valid advices provided.', code='invalid_advices')
            record = self._snapshot(db, appointment)

        return OperationResult(appointment=record, warnings=self._after_commit())

    # -- consultation room ----------------------------------------------------

    def join_consultation(self, caller: CallerIdentity, appointment_id: int) -> JoinTicket:
        with self._read() as db:
            appointment = self._load(db, appointment_id)
            self._ensure_party(caller, appointment, allow_admin=False)
            check_join_window(appointment.status, appointment.date_time, appointment.end_time, self._clock())

            is_advisor = caller.role == ADVISOR_ROLE
            user = appointment.advisor if is_advisor else appointment.client
            name = user.full_name if user is not None else ''
            participant = {
                'id': caller.id,
                'name': f'Dr. {name}' if is_advisor else name,
                'email': user.email if user is not None else '',
                'role': caller.role,
                'allowed': [appointment.advisor_id, appointment.client_id],
            }
            record = AppointmentRecord.model_validate(appointment)

        token = self._token_issuer.issue_session_token(appointment_id, participant)
        return JoinTicket(
            appointment=record,
            user_role=caller.role,
            room_name=room_name_for(appointment_id),
            room_domain=getattr(self._token_issuer, 'domain', None),
            token=token,
        )

    def end_consultation(
        self,
        caller: CallerIdentity,
        appointment_id: int,
        consultation_summary: str | None = None,
        chat_log: list | None = None,
    ) -> OperationResult:
        with self._locked_appointment(appointment_id) as (db, appointment):
            self._ensure_assigned_advisor(caller, appointment)
            self._complete(db, appointment, consultation_summary)
            if chat_log:
                appointment.chat_log = _serialize_chat(chat_log)
            record = self._snapshot(db, appointment)

        return OperationResult(appointment=record, warnings=self._after_commit())

    def handle_room_exit(self, appointment_id: int, user_id: int) -> RoomExitResult:
        with self._locked_appointment(appointment_id) as (db, appointment):
            if appointment.status != AppointmentStatus.SCHEDULED.value:
                return RoomExitResult(recorded=False, both_left=False, status=appointment.status)

            if user_id not in (appointment.advisor_id, appointment.client_id):
                raise AuthorizationError('Only participants can leave this consultation.')

            now = self._clock()
            appointment.participant_status = record_participant_exit(appointment.participant_status, user_id, now)
            both_left = both_participants_left(
                appointment.participant_status,
                appointment.advisor_id,
                appointment.client_id,
            )

            auto_completed = should_auto_complete(
                appointment.status,
                appointment.participant_status,
                appointment.advisor_id,
                appointment.client_id,
                appointment.date_time,
                now,
            )
            if auto_completed:
                self._complete(db, appointment, appointment.consultation_summary or AUTO_COMPLETION_SUMMARY)
                logger.info('Auto-completed consultation %s after both participants left', appointment.id)
            status = appointment.status

        warnings = self._after_commit() if auto_completed else []
        return RoomExitResult(
            recorded=True,
            both_left=both_left,
            auto_completed=auto_completed,
            status=status,
            warnings=warnings,
        )

    def save_chat_log(self, caller: CallerIdentity, appointment_id: int, messages: list) -> OperationResult:
        with self._transaction() as db:
            appointment = self._load(db, appointment_id)
            self._ensure_party(caller, appointment)
            appointment.chat_log = _serialize_chat(messages)
            record = self._snapshot(db, appointment)
        return OperationResult(appointment=record)

    def get_consultation_status(self, caller: CallerIdentity, appointment_id: int) -> ConsultationStatus:
        with self._read() as db:
            appointment = self._load(db, appointment_id)
            self._ensure_party(caller, appointment)
            return ConsultationStatus(
                appointment_id=appointment.id,
                status=appointment.status,
                is_active=appointment.status == AppointmentStatus.SCHEDULED.value,
                timestamp=self._clock(),
            )

    # -- documents --------------------------------------------------------------

    def attach_document(
        self,
        caller: CallerIdentity,
        appointment_id: int,
        name: str,
        file_url: str,
        file_type: str | None = None,
    ) -> OperationResult:
        with self._transaction() as db:
            appointment = self._load(db, appointment_id)
            self._ensure_party(caller, appointment, allow_admin=False)

            document = DocumentEntry(
                name=name,
                file_url=file_url,
                file_type=file_type,
                uploaded_by=caller.role,
                uploaded_at=self._clock(),
            )
            appointment.documents = [*(appointment.documents or []), document.model_dump(mode='json', by_alias=True)]
            recipient = appointment.client_id if caller.role == ADVISOR_ROLE else appointment.advisor_id
            enqueue_notification(
                db,
                NotificationKind.DOCUMENT_UPLOADED,
                appointment_payload(appointment, recipientId=recipient, document=document.model_dump(mode='json', by_alias=True)),
            )
            record = self._snapshot(db, appointment)

        return OperationResult(appointment=record, warnings=self._after_commit())

    def list_documents(self, caller: CallerIdentity, appointment_id: int) -> list[DocumentEntry]:
        with self._read() as db:
            appointment = self._load(db, appointment_id)
            self._ensure_party(caller, appointment)
            return [DocumentEntry.model_validate(document) for document in appointment.documents or []]

    # -- queries ----------------------------------------------------------------

    def get_appointment(self, appointment_id: int) -> AppointmentRecord:
        with self._read() as db:
            return AppointmentRecord.model_validate(self._load(db, appointment_id))

    def get_advisor_availability(self, advisor_id: int, day: date) -> AvailabilityView:
        with self._read() as db:
            advisor = self._lookup_user(db, advisor_id, ADVISOR_ROLE)
            record = resolve_day(advisor.availability, day)
            if not record.is_available:
                return AvailabilityView(advisor_id=advisor_id, day=day, is_available=False)

            return AvailabilityView(
                advisor_id=advisor_id,
                day=day,
                is_available=True,
                available_slots=generate_available_slots(db, advisor_id, day, record.windows),
                working_hours=record.working_hours(),
            )

    def get_pending_confirmations(self, advisor_id: int, limit: int = 10, skip: int = 0) -> PendingConfirmationPage:
        now = self._clock()
        with self._read() as db:
            query = db.query(Appointment).filter(
                Appointment.advisor_id == advisor_id,
                Appointment.status == AppointmentStatus.PENDING_ADVISOR_CONFIRMATION.value,
                Appointment.advisor_confirmation_expires > now,
            )
            total = query.count()
            appointments = query.order_by(
                Appointment.advisor_confirmation_expires.asc(),
            ).offset(skip).limit(limit).all()

            items = [
                PendingConfirmation(
                    appointment=AppointmentRecord.model_validate(appointment),
                    time_remaining=time_remaining(appointment.advisor_confirmation_expires, now),
                )
                for appointment in appointments
            ]

        return PendingConfirmationPage(
            appointments=items,
            total=total,
            limit=limit,
            skip=skip,
            pages=math.ceil(total / limit) if limit else 0,
        )

    def _page(self, query, limit: int, skip: int) -> AppointmentPage:
        total = query.count()
        appointments = query.order_by(Appointment.date_time.desc()).offset(skip).limit(limit).all()
        return AppointmentPage(
            appointments=[AppointmentRecord.model_validate(appointment) for appointment in appointments],
            total=total,
            limit=limit,
            skip=skip,
        )

    def list_client_appointments(
        self,
        client_id: int,
        status: str | None = None,
        limit: int = 10,
        skip: int = 0,
    ) -> AppointmentPage:
        with self._read() as db:
            query = db.query(Appointment).filter(Appointment.client_id == client_id)
            if status:
                query = query.filter(Appointment.status == parse_status(status).value)
            return self._page(query, limit, skip)

    def list_advisor_appointments(
        self,
        advisor_id: int,
        status: str | None = None,
        day: date | None = None,
        limit: int = 10,
        skip: int = 0,
    ) -> AppointmentPage:
        with self._read() as db:
            query = db.query(Appointment).filter(Appointment.advisor_id == advisor_id)
            if status:
                query = query.filter(Appointment.status == parse_status(status).value)
            if day is not None:
                day_start = datetime.combine(day, time.min)
                query = query.filter(
                    Appointment.date_time >= day_start,
                    Appointment.date_time < day_start + timedelta(days=1),
                )
            return self._page(query, limit, skip)

    def get_pending_follow_ups(self, client_id: int) -> list[AppointmentRecord]:
        with self._read() as db:
            appointments = db.query(Appointment).filter(
                Appointment.client_id == client_id,
                Appointment.status == AppointmentStatus.PENDING_PAYMENT.value,
                Appointment.short_description.startswith(FOLLOW_UP_PREFIX),
            ).order_by(Appointment.date_time.asc()).all()
            return [AppointmentRecord.model_validate(appointment) for appointment in appointments]

    def get_calendar_appointments(self, caller: CallerIdentity, start: datetime, end: datetime) -> CalendarView:
        start = as_utc_naive(start)
        end = as_utc_naive(end)
        if end < start:
            raise ValidationError('The calendar range ends before it starts.', code='invalid_date_range')

        with self._read() as db:
            query = db.query(Appointment).filter(
                Appointment.date_time >= start,
                Appointment.date_time <= end,
            )
            if caller.role == ADVISOR_ROLE:
                query = query.filter(Appointment.advisor_id == caller.id)
            elif caller.role == CLIENT_ROLE:
                query = query.filter(Appointment.client_id == caller.id)
            elif caller.role != ADMIN_ROLE:
                raise AuthorizationError('Your role cannot view the calendar.')

            events = []
            for appointment in query.order_by(Appointment.date_time.asc()).all():
                if caller.role == ADVISOR_ROLE:
                    title = appointment.client.full_name if appointment.client else ''
                else:
                    title = f'Dr. {appointment.advisor.full_name}' if appointment.advisor else ''
                color = status_color(appointment.status)
                events.append(
                    CalendarEvent(
                        id=appointment.id,
                        title=title,
                        start=appointment.date_time,
                        end=appointment.end_time,
                        background_color=color,
                        border_color=color,
                        status=appointment.status,
                        type=appointment.type,
                        short_description=appointment.short_description,
                    )
                )

        return CalendarView(events=events, total_appointments=len(events), start=start, end=end)


def _serialize_chat(messages: list) -> list[dict]:
    serialized = []
    for message in messages:
        entry = message if isinstance(message, ChatMessage) else ChatMessage.model_validate(message)
        serialized.append(entry.model_dump(mode='json'))
    return serialized


def build_lifecycle(session_factory: Callable[[], Session] | None = None) -> AppointmentLifecycle:
    session_factory = session_factory or SessionLocal
    return AppointmentLifecycle(
        session_factory=session_factory,
        notifier=LoggingNotifier(),
        payments=SqlPaymentGateway(session_factory),
        token_issuer=JitsiTokenIssuer(),
        notification_batch_size=config.NOTIFICATION_BATCH_SIZE,
        notification_max_attempts=config.NOTIFICATION_MAX_ATTEMPTS,
    )
