"""Value objects returned by the appointment lifecycle."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from consultbook.scheduling.slots import Slot


class CallerIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    role: str


class AdviceEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str | None = None
    dosage: str | None = None
    frequency: str | None = None
    duration: str | None = None
    instructions: str | None = None
    created_at: datetime | None = Field(default=None, alias='createdAt')

    def is_complete(self) -> bool:
        return all((self.action, self.dosage, self.frequency, self.duration))


class DocumentEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    file_url: str = Field(alias='fileUrl')
    file_type: str | None = Field(default=None, alias='fileType')
    uploaded_by: str = Field(alias='uploadedBy')
    uploaded_at: datetime | None = Field(default=None, alias='uploadedAt')


class ChatMessage(BaseModel):
    sender: str
    text: str
    timestamp: datetime | None = None


class FollowUpPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recommended: bool = False
    follow_up_date: datetime | None = Field(default=None, alias='date')
    notes: str | None = None
    create_appointment: bool = Field(default=False, alias='createAppointment')
    duration: int = 30


class AppointmentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    client_id: int
    advisor_id: int
    date_time: datetime
    end_time: datetime
    duration: int
    status: str
    type: str
    short_description: str
    notes: str | None = None
    consultation_summary: str | None = None
    cancellation_reason: str | None = None
    advisor_confirmation_expires: datetime | None = None
    advices: list[AdviceEntry] = Field(default_factory=list)
    documents: list[DocumentEntry] = Field(default_factory=list)
    chat_log: list[ChatMessage] = Field(default_factory=list)
    participant_status: dict = Field(default_factory=dict)
    follow_up_recommended: bool | None = None
    follow_up_date: datetime | None = None
    follow_up_notes: str | None = None
    payment_amount: Decimal | None = None
    payment_status: str | None = None
    payment_transaction_id: str | None = None
    version: int

    @field_validator('advices', 'documents', 'chat_log', mode='before')
    @classmethod
    def default_empty_list(cls, value):
        return value or []

    @field_validator('participant_status', mode='before')
    @classmethod
    def default_empty_dict(cls, value):
        return value or {}


class OperationResult(BaseModel):
    appointment: AppointmentRecord
    follow_up: AppointmentRecord | None = None
    warnings: list[str] = Field(default_factory=list)


class AppointmentPage(BaseModel):
    appointments: list[AppointmentRecord]
    total: int
    limit: int
    skip: int


class AvailabilityView(BaseModel):
    advisor_id: int
    day: date
    is_available: bool
    available_slots: list[Slot] = Field(default_factory=list)
    working_hours: list[dict] | dict | None = None


class PendingConfirmation(BaseModel):
    appointment: AppointmentRecord
    time_remaining: dict


class PendingConfirmationPage(BaseModel):
    appointments: list[PendingConfirmation]
    total: int
    limit: int
    skip: int
    pages: int


class CalendarEvent(BaseModel):
    id: int
    title: str
    start: datetime
    end: datetime
    background_color: str
    border_color: str
    status: str
    type: str
    short_description: str


class CalendarView(BaseModel):
    events: list[CalendarEvent]
    total_appointments: int
    start: datetime
    end: datetime


class JoinTicket(BaseModel):
    appointment: AppointmentRecord
    user_role: str
    room_name: str
    room_domain: str | None = None
    token: str


class RoomExitResult(BaseModel):
    recorded: bool
    both_left: bool
    auto_completed: bool = False
    status: str
    warnings: list[str] = Field(default_factory=list)


class ConsultationStatus(BaseModel):
    appointment_id: int
    status: str
    is_active: bool
    timestamp: datetime


class SweepReport(BaseModel):
    canceled: list[int] = Field(default_factory=list)
    failed: list[int] = Field(default_factory=list)
    warnings: dict[int, list[str]] = Field(default_factory=dict)
