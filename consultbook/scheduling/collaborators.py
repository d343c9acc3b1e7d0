"""Interfaces to the services the scheduler depends on, with default implementations."""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Protocol

import jwt
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError

from consultbook.core import config
from consultbook.core.errors import DependencyError
from consultbook.models.payment import Payment

logger = logging.getLogger(__name__)

PAYMENT_COMPLETED = 'completed'
PAYMENT_REFUNDED = 'refunded'
MAX_ROOM_PARTICIPANTS = 2


class Notifier(Protocol):
    def notify(self, kind: str, payload: dict) -> None:
        ...


class PaymentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: Decimal | None = None
    status: str


class PaymentGateway(Protocol):
    def find_payment(self, transaction_id: str) -> PaymentRecord | None:
        ...

    def mark_refunded(self, transaction_id: str) -> None:
        ...


class SessionTokenIssuer(Protocol):
    def issue_session_token(self, appointment_id: int, participant: dict) -> str:
        ...


class LoggingNotifier:
    """Delivers notifications to the application log."""

    def notify(self, kind: str, payload: dict) -> None:
        logger.info('Notification %s: %s', kind, payload)


class SqlPaymentGateway:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def find_payment(self, transaction_id: str) -> PaymentRecord | None:
        db = self._session_factory()
        try:
            payment = db.get(Payment, transaction_id)
            return PaymentRecord.model_validate(payment) if payment else None
        except SQLAlchemyError as exc:
            raise DependencyError(f'Payment {transaction_id} could not be loaded.') from exc
        finally:
            db.close()

    def mark_refunded(self, transaction_id: str) -> None:
        db = self._session_factory()
        try:
            payment = db.get(Payment, transaction_id)
            if payment is None or payment.status == PAYMENT_REFUNDED:
                return
            payment.status = PAYMENT_REFUNDED
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise DependencyError(f'Payment {transaction_id} could not be refunded.') from exc
        finally:
            db.close()


def room_name_for(appointment_id: int) -> str:
    return f'consultation-{appointment_id}'


class JitsiTokenIssuer:
    """Signs room tokens in the format Jitsi's JWT auth module expects."""

    def __init__(
        self,
        app_id: str = config.ROOM_APP_ID,
        app_secret: str = config.ROOM_APP_SECRET,
        domain: str = config.ROOM_DOMAIN,
        ttl_minutes: int = config.ROOM_TOKEN_TTL_MINUTES,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.domain = domain
        self.ttl_minutes = ttl_minutes

    def issue_session_token(self, appointment_id: int, participant: dict) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            'aud': self.app_id,
            'iss': self.app_id,
            'sub': self.domain,
            'room': room_name_for(appointment_id),
            'iat': now,
            'exp': now + timedelta(minutes=self.ttl_minutes),
            'context': {
                'user': {
                    'id': str(participant['id']),
                    'name': participant.get('name', ''),
                    'email': participant.get('email', ''),
                    'moderator': participant.get('role') == 'advisor',
                },
                'limits': {
                    'maxParticipants': MAX_ROOM_PARTICIPANTS,
                    'allowedParticipants': [str(user_id) for user_id in participant.get('allowed', [])],
                },
            },
        }
        return jwt.encode(payload, self.app_secret, algorithm='HS256')
