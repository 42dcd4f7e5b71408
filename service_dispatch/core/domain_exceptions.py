"""Domain error hierarchy raised by the service layer."""

from service_dispatch.core.error_codes import ErrorCode


class DomainException(Exception):
    """Base class for errors surfaced to callers with a code and message."""

    status_code = 400
    default_code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFoundError(DomainException):
    status_code = 404
    default_code = ErrorCode.NOT_FOUND


class ValidationError(DomainException):
    status_code = 400
    default_code = ErrorCode.VALIDATION_ERROR


class InvalidTransitionError(DomainException):
    status_code = 400
    default_code = ErrorCode.INVALID_TRANSITION


class ForbiddenError(DomainException):
    status_code = 403
    default_code = ErrorCode.PROVIDER_MISMATCH


class ConflictError(DomainException):
    status_code = 409
    default_code = ErrorCode.PROVIDER_BUSY


class PersistenceError(DomainException):
    status_code = 500
    default_code = ErrorCode.PERSISTENCE_ERROR
