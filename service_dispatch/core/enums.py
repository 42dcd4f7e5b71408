"""Closed enumerations shared by models, services and schemas."""

import enum

from service_dispatch.core.domain_exceptions import ValidationError
from service_dispatch.core.error_codes import ErrorCode


class ServiceType(str, enum.Enum):
    CLEANING = "CLEANING"
    PLUMBING = "PLUMBING"
    ELECTRICIAN = "ELECTRICIAN"


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class ChangedBy(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


# Bookings that count against a provider's load.
ACTIVE_STATUSES = (BookingStatus.ASSIGNED, BookingStatus.IN_PROGRESS)


def parse_service_type(value: object) -> ServiceType:
    if isinstance(value, ServiceType):
        return value
    normalized = str(value or "").strip().upper()
    try:
        return ServiceType(normalized)
    except ValueError:
        allowed = ", ".join(member.value for member in ServiceType)
        raise ValidationError(
            f"Invalid service type '{value}'. Allowed: {allowed}",
            code=ErrorCode.INVALID_SERVICE_TYPE,
        ) from None


def parse_booking_status(value: object) -> BookingStatus:
    if isinstance(value, BookingStatus):
        return value
    normalized = str(value or "").strip().upper()
    try:
        return BookingStatus(normalized)
    except ValueError:
        allowed = ", ".join(member.value for member in BookingStatus)
        raise ValidationError(
            f"Invalid status '{value}'. Allowed: {allowed}",
            code=ErrorCode.INVALID_STATUS,
        ) from None
