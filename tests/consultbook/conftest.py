import os
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from consultbook.core.errors import DependencyError  # noqa: E402
from consultbook.database import Base  # noqa: E402
from consultbook.models.appointment import Appointment  # noqa: E402
from consultbook.models.notification import NotificationOutbox  # noqa: E402,F401
from consultbook.models.payment import Payment  # noqa: E402,F401
from consultbook.models.user import User  # noqa: E402
from consultbook.scheduling.collaborators import PaymentRecord  # noqa: E402
from consultbook.scheduling.lifecycle import AppointmentLifecycle  # noqa: E402

WEEKDAY_HOURS = [
    {
        'dayOfWeek': day_of_week,
        'isAvailable': True,
        'timeSlots': [
            {'startTime': '09:00', 'endTime': '12:00'},
            {'startTime': '13:00', 'endTime': '17:00'},
        ],
    }
    for day_of_week in range(5)
]


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.failing_kinds: set[str] = set()

    def notify(self, kind: str, payload: dict) -> None:
        if kind in self.failing_kinds:
            raise RuntimeError('notification channel down')
        self.sent.append((kind, payload))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.sent]


class FakePaymentGateway:
    def __init__(self):
        self.payments: dict[str, PaymentRecord] = {}
        self.refund_calls: list[str] = []
        self.failing: set[str] = set()

    def add(self, transaction_id: str, status: str = 'completed', amount: str = '50.00') -> None:
        self.payments[transaction_id] = PaymentRecord(id=transaction_id, amount=Decimal(amount), status=status)

    def find_payment(self, transaction_id: str) -> PaymentRecord | None:
        payment = self.payments.get(transaction_id)
        return payment.model_copy() if payment else None

    def mark_refunded(self, transaction_id: str) -> None:
        self.refund_calls.append(transaction_id)
        if transaction_id in self.failing:
            raise DependencyError(f'Payment {transaction_id} could not be refunded.')
        payment = self.payments.get(transaction_id)
        if payment is not None:
            payment.status = 'refunded'


class FakeTokenIssuer:
    domain = 'meet.example.test'

    def __init__(self):
        self.issued: list[tuple[int, dict]] = []

    def issue_session_token(self, appointment_id: int, participant: dict) -> str:
        self.issued.append((appointment_id, participant))
        return f'token-{appointment_id}-{participant["id"]}'


@pytest.fixture
def session_factory():
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 6, 7, 12, 0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def payments():
    return FakePaymentGateway()


@pytest.fixture
def token_issuer():
    return FakeTokenIssuer()


@pytest.fixture
def lifecycle(session_factory, notifier, payments, token_issuer, clock):
    return AppointmentLifecycle(
        session_factory=session_factory,
        notifier=notifier,
        payments=payments,
        token_issuer=token_issuer,
        clock=clock,
    )


@pytest.fixture
def make_user(session_factory):
    def _make_user(role: str, email: str, **fields) -> int:
        db = session_factory()
        try:
            user = User(email=email, hashed_password='', role=role, **fields)
            db.add(user)
            db.commit()
            return user.id
        finally:
            db.close()

    return _make_user


@pytest.fixture
def make_appointment(session_factory):
    def _make_appointment(client_id: int, advisor_id: int, start: datetime, **fields) -> int:
        duration = fields.pop('duration', 30)
        values = {
            'type': 'video',
            'short_description': 'Recurring headaches',
            'status': 'scheduled',
            'end_time': start + timedelta(minutes=duration),
        }
        values.update(fields)

        db = session_factory()
        try:
            appointment = Appointment(
                client_id=client_id,
                advisor_id=advisor_id,
                date_time=start,
                duration=duration,
                **values,
            )
            db.add(appointment)
            db.commit()
            return appointment.id
        finally:
            db.close()

    return _make_appointment


@pytest.fixture
def fetch_appointment(session_factory):
    def _fetch_appointment(appointment_id: int) -> Appointment:
        db = session_factory()
        try:
            appointment = db.get(Appointment, appointment_id)
            db.expunge_all()
            return appointment
        finally:
            db.close()

    return _fetch_appointment


@pytest.fixture
def advisor_id(make_user):
    return make_user(
        'advisor',
        'grace.hopper@clinic.example',
        first_name='Grace',
        last_name='Hopper',
        consultation_fee=Decimal('80.00'),
        availability=WEEKDAY_HOURS,
    )


@pytest.fixture
def client_id(make_user):
    return make_user('client', 'ada@example.com', first_name='Ada', last_name='Lovelace')
