from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from service_dispatch.core.enums import BookingStatus, ChangedBy, ServiceType


class CreateBookingRequest(BaseModel):
    service_type: str
    customer_id: str | None = Field(default=None, max_length=128)


class AssignRequest(BaseModel):
    provider_id: int | None = None
    provider_ids: list[int] | None = None
    auto: bool = False


class RespondRequest(BaseModel):
    provider_id: int
    accept: StrictBool


class ReasonRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: str | None
    service_type: ServiceType
    status: BookingStatus
    provider_id: int | None
    rejection_count: int
    cancellation_reason: str | None = None
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class NextAssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: int
    customer_id: str | None
    service_type: ServiceType
    status: BookingStatus


class TransitionResponse(BaseModel):
    """Updated booking plus what happened to the provider it freed, if any."""

    model_config = ConfigDict(from_attributes=True)

    booking: BookingResponse
    next_assignment: NextAssignmentResponse | None = None
    provider_released: bool = False
    reassigned_provider_id: int | None = None


class BookingEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    old_status: BookingStatus
    new_status: BookingStatus
    changed_by: ChangedBy
    note: str | None
    timestamp: datetime
