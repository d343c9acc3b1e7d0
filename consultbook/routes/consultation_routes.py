from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from consultbook.auth.dependencies import get_caller
from consultbook.routes.dependencies import get_lifecycle, run_operation
from consultbook.scheduling.lifecycle import AppointmentLifecycle
from consultbook.scheduling.schemas import (
    CallerIdentity,
    ChatMessage,
    ConsultationStatus,
    JoinTicket,
    OperationResult,
    RoomExitResult,
)

router = APIRouter(tags=['consultations'])


class EndConsultationRequest(BaseModel):
    consultation_summary: str | None = Field(default=None, alias='consultationSummary')
    chat_log: list[ChatMessage] = Field(default_factory=list, alias='chatLog')


class ChatLogRequest(BaseModel):
    messages: list[ChatMessage]


@router.get('/{appointment_id}/join', response_model=JoinTicket)
def join_consultation(
    appointment_id: int,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(lifecycle.join_consultation, caller, appointment_id)


@router.post('/{appointment_id}/end', response_model=OperationResult)
def end_consultation(
    appointment_id: int,
    payload: EndConsultationRequest,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(
        lifecycle.end_consultation,
        caller,
        appointment_id,
        consultation_summary=payload.consultation_summary,
        chat_log=payload.chat_log,
    )


@router.post('/{appointment_id}/exit', response_model=RoomExitResult)
def leave_consultation(
    appointment_id: int,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(lifecycle.handle_room_exit, appointment_id, caller.id)


@router.put('/{appointment_id}/chat', response_model=OperationResult)
def save_chat_log(
    appointment_id: int,
    payload: ChatLogRequest,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(lifecycle.save_chat_log, caller, appointment_id, payload.messages)


@router.get('/{appointment_id}/status', response_model=ConsultationStatus)
def get_consultation_status(
    appointment_id: int,
    caller: CallerIdentity = Depends(get_caller),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(lifecycle.get_consultation_status, caller, appointment_id)
