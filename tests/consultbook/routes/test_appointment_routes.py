from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from consultbook.routes import advisor_routes, appointment_routes, auth_routes, consultation_routes
from consultbook.routes.appointment_routes import (
    AddAdvicesRequest,
    AttachDocumentRequest,
    CompletePaymentRequest,
    ConsultationResultsRequest,
    CreateAppointmentRequest,
    FollowUpRequest,
    UpdateStatusRequest,
)
from consultbook.routes.consultation_routes import ChatLogRequest, EndConsultationRequest
from consultbook.routes.dependencies import get_lifecycle, run_operation
from consultbook.scheduling.schemas import CallerIdentity

MONDAY_9 = datetime(2024, 6, 10, 9, 0)


@pytest.fixture
def client(client_id):
    return CallerIdentity(id=client_id, role='client')


@pytest.fixture
def advisor(advisor_id):
    return CallerIdentity(id=advisor_id, role='advisor')


@pytest.fixture
def admin():
    return CallerIdentity(id=900, role='admin')


def _create_request(advisor_id: int, **overrides) -> CreateAppointmentRequest:
    payload = {
        'advisorId': advisor_id,
        'dateTime': MONDAY_9.isoformat(),
        'type': ' Video ',
        'shortDescription': '  Recurring headaches ',
    }
    payload.update(overrides)
    return CreateAppointmentRequest(**payload)


def test_create_appointment_request_normalizes_fields(advisor_id) -> None:
    request = _create_request(advisor_id, notes='   ')

    assert request.type == 'video'
    assert request.short_description == 'Recurring headaches'
    assert request.notes is None
    assert request.duration == 30


def test_create_appointment_request_rejects_long_description(advisor_id) -> None:
    with pytest.raises(ValidationError):
        _create_request(advisor_id, shortDescription='x' * 501)


def test_complete_payment_request_requires_transaction_id() -> None:
    with pytest.raises(ValidationError):
        CompletePaymentRequest(transactionId='   ')


def test_attach_document_request_requires_name() -> None:
    with pytest.raises(ValidationError):
        AttachDocumentRequest(name=' ', fileUrl='https://files.example/x.pdf')


def test_get_lifecycle_reports_unavailable_before_startup() -> None:
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))

    with pytest.raises(HTTPException) as exception_info:
        get_lifecycle(request)

    assert exception_info.value.status_code == 503


def test_get_lifecycle_returns_shared_instance(lifecycle) -> None:
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(lifecycle=lifecycle)))

    assert get_lifecycle(request) is lifecycle


def test_run_operation_maps_database_errors_to_503() -> None:
    def broken():
        raise OperationalError('SELECT 1', {}, Exception('connection refused'))

    with pytest.raises(HTTPException) as exception_info:
        run_operation(broken)

    assert exception_info.value.status_code == 503
    assert exception_info.value.detail == 'Database unavailable. Verify DATABASE_URL.'


def test_create_appointment_route_books_for_client(lifecycle, client, advisor_id) -> None:
    result = appointment_routes.create_appointment(_create_request(advisor_id), caller=client, lifecycle=lifecycle)

    assert result.appointment.status == 'pending-advisor-confirmation'
    assert result.appointment.client_id == client.id


def test_create_appointment_route_rejects_non_clients(lifecycle, advisor, advisor_id) -> None:
    with pytest.raises(HTTPException) as exception_info:
        appointment_routes.create_appointment(_create_request(advisor_id), caller=advisor, lifecycle=lifecycle)

    assert exception_info.value.status_code == 403
    assert exception_info.value.detail['code'] == 'unauthorized'


def test_create_appointment_route_maps_domain_errors(lifecycle, client, advisor_id) -> None:
    with pytest.raises(HTTPException) as exception_info:
        appointment_routes.create_appointment(
            _create_request(advisor_id, duration=20),
            caller=client,
            lifecycle=lifecycle,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail['code'] == 'invalid_duration'


def test_create_appointment_route_reports_conflict_as_409(
    lifecycle,
    client,
    advisor_id,
    client_id,
    make_appointment,
) -> None:
    make_appointment(client_id, advisor_id, MONDAY_9)

    with pytest.raises(HTTPException) as exception_info:
        appointment_routes.create_appointment(_create_request(advisor_id), caller=client, lifecycle=lifecycle)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail['code'] == 'advisor_not_available'


def test_confirm_route_reports_expiry_after_cancelling(
    lifecycle,
    advisor,
    advisor_id,
    client_id,
    make_appointment,
    fetch_appointment,
    clock,
) -> None:
    appointment_id = make_appointment(
        client_id,
        advisor_id,
        MONDAY_9,
        status='pending-advisor-confirmation',
        advisor_confirmation_expires=clock.now - timedelta(minutes=1),
    )

    with pytest.raises(HTTPException) as exception_info:
        appointment_routes.confirm_appointment(appointment_id, caller=advisor, lifecycle=lifecycle)

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail['code'] == 'confirmation_expired'
    assert exception_info.value.detail['appointmentId'] == appointment_id
    assert fetch_appointment(appointment_id).status == 'canceled'


def test_update_status_route_cancels(lifecycle, client, advisor_id, client_id, make_appointment) -> None:
    appointment_id = make_appointment(client_id, advisor_id, MONDAY_9)

    result = appointment_routes.update_appointment_status(
        appointment_id,
        UpdateStatusRequest(status='canceled', cancellationReason='Travelling'),
        caller=client,
        lifecycle=lifecycle,
    )

    assert result.appointment.status == 'canceled'
    assert result.appointment.cancellation_reason == 'Travelling'


def test_update_status_route_rejects_terminal_transition(lifecycle, advisor, advisor_id, client_id, make_appointment) -> None:
    appointment_id = make_appointment(client_id, advisor_id, MONDAY_9, status='completed')

    with pytest.raises(HTTPException) as exception_info:
        appointment_routes.update_appointment_status(
            appointment_id,
            UpdateStatusRequest(status='scheduled'),
            caller=advisor,
            lifecycle=lifecycle,
        )

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail['code'] == 'cannot_change_status'


def test_complete_payment_route_checks_owner(
    lifecycle,
    client,
    advisor,
    advisor_id,
    client_id,
    make_appointment,
    payments,
) -> None:
    payments.add('txn-5')
    appointment_id = make_appointment(client_id, advisor_id, MONDAY_9, status='pending-payment')

    with pytest.raises(HTTPException) as exception_info:
        appointment_routes.complete_payment(
            appointment_id,
            CompletePaymentRequest(transactionId='txn-5'),
            caller=advisor,
            lifecycle=lifecycle,
        )
    assert exception_info.value.status_code == 403

    result = appointment_routes.complete_payment(
        appointment_id,
        CompletePaymentRequest(transactionId='txn-5'),
        caller=client,
        lifecycle=lifecycle,
    )
    assert result.appointment.status == 'scheduled'


def test_complete_payment_route_rejects_unknown_transaction(lifecycle, client, advisor_id, client_id, make_appointment) -> None:
    appointment_id = make_appointment(client_id, advisor_id, MONDAY_9, status='pending-payment')

    with pytest.raises(HTTPException) as exception_info:
        appointment_routes.complete_payment(
            appointment_id,
            CompletePaymentRequest(transactionId='made-up-txn'),
            caller=client,
            lifecycle=lifecycle,
        )

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail['code'] == 'payment_not_found'


def test_consultation_status_route_hides_other_appointments(
    lifecycle,
    advisor_id,
    client_id,
    make_user,
    make_appointment,
) -> None:
    appointment_id = make_appointment(client_id, advisor_id, MONDAY_9)
    stranger = CallerIdentity(id=make_user('client', 'eve@example.com'), role='client')

    with pytest.raises(HTTPException) as exception_info:
        consultation_routes.get_consultation_status(appointment_id, caller=stranger, lifecycle=lifecycle)

    assert exception_info.value.status_code == 403


def test_list_routes_only_show_own_appointments(lifecycle, client, advisor, admin, advisor_id, client_id) -> None:
    with pytest.raises(HTTPException) as exception_info:
        appointment_routes.list_client_appointments(client_id + 1, caller=client, lifecycle=lifecycle, limit=10, skip=0)
    assert exception_info.value.status_code == 403

    with pytest.raises(HTTPException):
        appointment_routes.list_advisor_appointments(advisor_id, caller=client, lifecycle=lifecycle, limit=10, skip=0)

    page = appointment_routes.list_client_appointments(client_id, caller=admin, lifecycle=lifecycle, limit=10, skip=0)
    assert page.total == 0


def test_get_appointment_route_hides_other_clients_bookings(
    lifecycle,
    advisor_id,
    client_id,
    make_user,
    make_appointment,
) -> None:
    appointment_id = make_appointment(client_id, advisor_id, MONDAY_9)
    stranger = CallerIdentity(id=make_user('client', 'eve@example.com'), role='client')

    with pytest.raises(HTTPException) as exception_info:
        appointment_routes.get_appointment(appointment_id, caller=stranger, lifecycle=lifecycle)

    assert exception_info.value.status_code == 403


def test_get_appointment_route_returns_404_for_missing(lifecycle, admin) -> None:
    with pytest.raises(HTTPException) as exception_info:
        appointment_routes.get_appointment(404, caller=admin, lifecycle=lifecycle)

    assert exception_info.value.status_code == 404
    assert exception_info.value.detail == {'code': 'not_found', 'message': 'Appointment not found.'}


def test_cleanup_route_is_admin_only(lifecycle, client, admin) -> None:
    with pytest.raises(HTTPException):
        appointment_routes.cleanup_expired_appointments(caller=client, lifecycle=lifecycle)

    report = appointment_routes.cleanup_expired_appointments(caller=admin, lifecycle=lifecycle)
    assert report.canceled == []


def test_results_and_advices_routes(lifecycle, advisor, advisor_id, client_id, make_appointment) -> None:
    appointment_id = make_appointment(client_id, advisor_id, MONDAY_9 - timedelta(days=7), status='completed')

    results = appointment_routes.update_consultation_results(
        appointment_id,
        ConsultationResultsRequest(
            consultationSummary='Sprained ankle',
            followUp={'recommended': True, 'date': '2024-06-21T09:00:00', 'notes': 'Check swelling'},
        ),
        caller=advisor,
        lifecycle=lifecycle,
    )
    advices = appointment_routes.add_advices(
        appointment_id,
        AddAdvicesRequest(advices=[{'action': 'Ice', 'dosage': '15 min', 'frequency': 'hourly', 'duration': '2 days'}]),
        caller=advisor,
        lifecycle=lifecycle,
    )

    assert results.appointment.follow_up_notes == 'Check swelling'
    assert results.follow_up is None
    assert [advice.action for advice in advices.appointment.advices] == ['Ice']


def test_follow_up_route_creates_sibling(lifecycle, advisor, advisor_id, client_id, make_appointment) -> None:
    appointment_id = make_appointment(client_id, advisor_id, MONDAY_9 - timedelta(days=7), status='completed')

    result = appointment_routes.schedule_follow_up(
        appointment_id,
        FollowUpRequest(followUpDate='2024-06-21T09:00:00', notes='Check swelling'),
        caller=advisor,
        lifecycle=lifecycle,
    )

    assert result.follow_up.status == 'pending-payment'


def test_documents_routes(lifecycle, advisor, advisor_id, client_id, make_appointment) -> None:
    appointment_id = make_appointment(client_id, advisor_id, MONDAY_9)

    appointment_routes.attach_document(
        appointment_id,
        AttachDocumentRequest(name='x-ray.png', fileUrl='https://files.example/x-ray.png', fileType='image/png'),
        caller=advisor,
        lifecycle=lifecycle,
    )
    documents = appointment_routes.list_documents(appointment_id, caller=advisor, lifecycle=lifecycle)

    assert [(document.name, document.uploaded_by) for document in documents] == [('x-ray.png', 'advisor')]


def test_advisor_availability_route(lifecycle, advisor_id) -> None:
    view = advisor_routes.get_advisor_availability(advisor_id, day=date(2024, 6, 10), lifecycle=lifecycle)

    assert view.is_available is True
    assert len(view.available_slots) == 6 + 8


def test_consultation_routes_cover_room_lifecycle(
    lifecycle,
    client,
    advisor,
    advisor_id,
    client_id,
    make_appointment,
    clock,
) -> None:
    appointment_id = make_appointment(client_id, advisor_id, clock.now)

    ticket = consultation_routes.join_consultation(appointment_id, caller=client, lifecycle=lifecycle)
    consultation_routes.save_chat_log(
        appointment_id,
        ChatLogRequest(messages=[{'sender': 'client', 'text': 'Hi'}]),
        caller=client,
        lifecycle=lifecycle,
    )
    exit_result = consultation_routes.leave_consultation(appointment_id, caller=client, lifecycle=lifecycle)
    ended = consultation_routes.end_consultation(
        appointment_id,
        EndConsultationRequest(consultationSummary='All good'),
        caller=advisor,
        lifecycle=lifecycle,
    )
    status = consultation_routes.get_consultation_status(appointment_id, caller=client, lifecycle=lifecycle)

    assert ticket.room_name == f'consultation-{appointment_id}'
    assert exit_result.recorded is True
    assert exit_result.both_left is False
    assert ended.appointment.status == 'completed'
    assert ended.appointment.chat_log[0].text == 'Hi'
    assert status.is_active is False


def test_me_route_returns_profile() -> None:
    user = SimpleNamespace(id=5, email='ada@example.com', role='client', full_name='Ada Lovelace')

    assert auth_routes.me(current_user=user) == {
        'id': 5,
        'email': 'ada@example.com',
        'role': 'client',
        'name': 'Ada Lovelace',
    }
