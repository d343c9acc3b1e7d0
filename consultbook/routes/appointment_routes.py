from datetime import date, datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from consultbook.auth.dependencies import get_caller
from consultbook.routes.dependencies import get_lifecycle, require_role, require_self_or_admin, run_operation
from consultbook.scheduling.lifecycle import ADMIN_ROLE, ADVISOR_ROLE, CLIENT_ROLE, AppointmentLifecycle
from consultbook.scheduling.schemas import (
    AdviceEntry,
    AppointmentPage,
    AppointmentRecord,
    CalendarView,
    CallerIdentity,
    DocumentEntry,
    FollowUpPlan,
    OperationResult,
    PendingConfirmationPage,
    SweepReport,
)

router = APIRouter(tags=['appointments'])

MAX_DESCRIPTION_LENGTH = 500
MAX_PAGE_SIZE = 100


class CreateAppointmentRequest(BaseModel):
    advisor_id: int = Field(alias='advisorId')
    date_time: datetime = Field(alias='dateTime')
    type: str
    short_description: str = Field(alias='shortDescription')
    notes: str | None = None
    duration: int = 30

    @field_validator('type')
    @classmethod
    def normalize_type(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator('short_description')
    @classmethod
    def validate_short_description(cls, value: str) -> str:
        normalized = value.strip()
        if len(normalized) > MAX_DESCRIPTION_LENGTH:
            raise ValueError(f'Description must be {MAX_DESCRIPTION_LENGTH} characters or fewer.')
        return normalized

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None


class UpdateStatusRequest(BaseModel):
    status: str
    consultation_summary: str | None = Field(default=None, alias='consultationSummary')
    cancellation_reason: str | None = Field(default=None, alias='cancellationReason')


class CompletePaymentRequest(BaseModel):
    transaction_id: str = Field(alias='transactionId')

    @field_validator('transaction_id')
    @classmethod
    def validate_transaction_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Transaction id is required.')
        return normalized


class FollowUpRequest(BaseModel):
    follow_up_date: datetime = Field(alias='followUpDate')
    notes: str | None = None
    duration: int = 30


class ConsultationResultsRequest(BaseModel):
    consultation_summary: str | None = Field(default=None, alias='consultationSummary')
    advices: list[AdviceEntry] = Field(default_factory=list)
    follow_up: FollowUpPlan | None = Field(default=None, alias='followUp')


class AddAdvicesRequest(BaseModel):
    advices: list[AdviceEntry]


class AttachDocumentRequest(BaseModel):
    name: str
    file_url: str = Field(alias='fileUrl')
    file_type: str | None = Field(default=None, alias='fileType')

    @field_validator('name', 'file_url')
    @classmethod
    def require_value(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Document name and URL are required.')
        return normalized


@router.post('', response_model=OperationResult, status_code=201)
def create_appointment(
    payload: CreateAppointmentRequest,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    require_role(caller, CLIENT_ROLE)
    return run_operation(
        lifecycle.create_appointment,
        caller,
        advisor_id=payload.advisor_id,
        date_time=payload.date_time,
        appointment_type=payload.type,
        short_description=payload.short_description,
        notes=payload.notes,
        duration=payload.duration,
    )


@router.get('/client/{client_id}', response_model=AppointmentPage)
def list_client_appointments(
    client_id: int,
    status: str | None = None,
    limit: int = Query(default=10, ge=1, le=MAX_PAGE_SIZE),
    skip: int = Query(default=0, ge=0),
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    require_self_or_admin(caller, client_id, CLIENT_ROLE)
    return run_operation(lifecycle.list_client_appointments, client_id, status=status, limit=limit, skip=skip)


@router.get('/advisor/{advisor_id}', response_model=AppointmentPage)
def list_advisor_appointments(
    advisor_id: int,
    status: str | None = None,
    day: date | None = Query(default=None, alias='date'),
    limit: int = Query(default=10, ge=1, le=MAX_PAGE_SIZE),
    skip: int = Query(default=0, ge=0),
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    require_self_or_admin(caller, advisor_id, ADVISOR_ROLE)
    return run_operation(
        lifecycle.list_advisor_appointments,
        advisor_id,
        status=status,
        day=day,
        limit=limit,
        skip=skip,
    )


@router.get('/calendar', response_model=CalendarView)
def get_calendar_appointments(
    start: datetime,
    end: datetime,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(lifecycle.get_calendar_appointments, caller, start, end)


@router.get('/pending-confirmations', response_model=PendingConfirmationPage)
def get_pending_confirmations(
    limit: int = Query(default=10, ge=1, le=MAX_PAGE_SIZE),
    skip: int = Query(default=0, ge=0),
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    require_role(caller, ADVISOR_ROLE)
    return run_operation(lifecycle.get_pending_confirmations, caller.id, limit=limit, skip=skip)


@router.get('/pending-follow-ups', response_model=list[AppointmentRecord])
def get_pending_follow_ups(
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    require_role(caller, CLIENT_ROLE)
    return run_operation(lifecycle.get_pending_follow_ups, caller.id)


@router.post('/cleanup', response_model=SweepReport)
def cleanup_expired_appointments(
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    require_role(caller, ADMIN_ROLE)
    return run_operation(lifecycle.cleanup_expired_appointments)


@router.get('/{appointment_id}', response_model=AppointmentRecord)
def get_appointment(
    appointment_id: int,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    appointment = run_operation(lifecycle.get_appointment, appointment_id)
    if caller.role == ADVISOR_ROLE:
        require_self_or_admin(caller, appointment.advisor_id, ADVISOR_ROLE)
    else:
        require_self_or_admin(caller, appointment.client_id, CLIENT_ROLE)
    return appointment


@router.post('/{appointment_id}/confirm', response_model=OperationResult)
def confirm_appointment(
    appointment_id: int,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(lifecycle.confirm_appointment, caller, appointment_id)


@router.patch('/{appointment_id}/status', response_model=OperationResult)
def update_appointment_status(
    appointment_id: int,
    payload: UpdateStatusRequest,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(
        lifecycle.update_appointment_status,
        caller,
        appointment_id,
        payload.status,
        consultation_summary=payload.consultation_summary,
        cancellation_reason=payload.cancellation_reason,
    )


@router.post('/{appointment_id}/payment', response_model=OperationResult)
def complete_payment(
    appointment_id: int,
    payload: CompletePaymentRequest,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    appointment = run_operation(lifecycle.get_appointment, appointment_id)
    require_self_or_admin(caller, appointment.client_id, CLIENT_ROLE)
    return run_operation(lifecycle.complete_payment, appointment_id, payload.transaction_id)


@router.post('/{appointment_id}/follow-up', response_model=OperationResult, status_code=201)
def schedule_follow_up(
    appointment_id: int,
    payload: FollowUpRequest,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(
        lifecycle.schedule_follow_up,
        caller,
        appointment_id,
        payload.follow_up_date,
        notes=payload.notes,
        duration=payload.duration,
    )


@router.put('/{appointment_id}/results', response_model=OperationResult)
def update_consultation_results(
    appointment_id: int,
    payload: ConsultationResultsRequest,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(
        lifecycle.update_consultation_results,
        caller,
        appointment_id,
        consultation_summary=payload.consultation_summary,
        advices=payload.advices,
        follow_up=payload.follow_up,
    )


@router.post('/{appointment_id}/advices', response_model=OperationResult)
def add_advices(
    appointment_id: int,
    payload: AddAdvicesRequest,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(lifecycle.add_advices, caller, appointment_id, payload.advices)


@router.post('/{appointment_id}/documents', response_model=OperationResult, status_code=201)
def attach_document(
    appointment_id: int,
    payload: AttachDocumentRequest,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(
        lifecycle.attach_document,
        caller,
        appointment_id,
        payload.name,
        payload.file_url,
        file_type=payload.file_type,
    )


@router.get('/{appointment_id}/documents', response_model=list[DocumentEntry])
def list_documents(
    appointment_id: int,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(lifecycle.list_documents, caller, appointment_id)
