import logging

from fastapi import HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError

from consultbook.core.errors import AuthorizationError, DomainError
from consultbook.scheduling.lifecycle import ADMIN_ROLE, AppointmentLifecycle
from consultbook.scheduling.schemas import CallerIdentity

logger = logging.getLogger(__name__)


def get_lifecycle(request: Request) -> AppointmentLifecycle:
    lifecycle = getattr(request.app.state, 'lifecycle', None)
    if lifecycle is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL.',
        )
    return lifecycle


def run_operation(operation, *args, **kwargs):
    try:
        return operation(*args, **kwargs)
    except DomainError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc
    except SQLAlchemyError as exc:
        logger.exception('Database error in %s', getattr(operation, '__name__', operation))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL.',
        ) from exc


def require_self_or_admin(caller: CallerIdentity, user_id: int, role: str) -> None:
    if caller.role == ADMIN_ROLE:
        return
    if caller.role != role or caller.id != user_id:
        error = AuthorizationError('You can only view your own appointments.')
        raise HTTPException(status_code=error.status_code, detail=error.to_detail())


def require_role(caller: CallerIdentity, *roles: str) -> None:
    if caller.role not in roles:
        error = AuthorizationError(f'Only {" or ".join(roles)} users can do this.')
        raise HTTPException(status_code=error.status_code, detail=error.to_detail())
