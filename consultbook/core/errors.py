"""Domain error taxonomy shared by the scheduling engine and the API layer."""


class DomainError(Exception):
    """Base class for rejections that carry a stable reason code."""

    status_code = 400
    default_code = 'domain_error'

    def __init__(self, message: str, code: str | None = None, **context):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context

    def to_detail(self) -> dict:
        detail = {'code': self.code, 'message': self.message}
        if self.context:
            detail.update(self.context)
        return detail


class ValidationError(DomainError):
    status_code = 400
    default_code = 'validation_error'


class NotFoundError(DomainError):
    status_code = 404
    default_code = 'not_found'


class AuthorizationError(DomainError):
    status_code = 403
    default_code = 'unauthorized'


class ConflictError(DomainError):
    status_code = 409
    default_code = 'conflict'


class InvalidStateTransitionError(DomainError):
    status_code = 400
    default_code = 'cannot_change_status'


class ExpiredError(DomainError):
    """The confirmation deadline had passed; the appointment was auto-canceled."""

    status_code = 400
    default_code = 'confirmation_expired'


class DependencyError(DomainError):
    """A payment or notification collaborator failed."""

    status_code = 502
    default_code = 'dependency_failed'


class AvailabilityConventionError(ValidationError):
    default_code = 'weekday_convention_mismatch'
