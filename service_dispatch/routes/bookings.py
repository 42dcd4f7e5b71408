from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from service_dispatch.db.session import get_db
from service_dispatch.schemas.booking import (
    AssignRequest,
    BookingEventResponse,
    BookingResponse,
    CreateBookingRequest,
    ReasonRequest,
    RespondRequest,
    TransitionResponse,
)
from service_dispatch.schemas.common import APIResponse
from service_dispatch.services import booking_service
from service_dispatch.services.audit_log import get_booking_history

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _transition_response(result: booking_service.TransitionResult) -> APIResponse[TransitionResponse]:
    return APIResponse(
        success=True,
        data=TransitionResponse.model_validate(result, from_attributes=True),
    )


@router.get("", response_model=APIResponse[List[BookingResponse]])
def list_bookings(
    status: str | None = None,
    customer_id: str | None = None,
    provider_id: int | None = None,
    limit: int = Query(default=booking_service.LIST_LIMIT, ge=1, le=booking_service.LIST_LIMIT),
    db: Session = Depends(get_db),
):
    bookings = booking_service.list_bookings(
        db=db,
        status=status,
        customer_id=customer_id,
        provider_id=provider_id,
        limit=limit,
    )
    return APIResponse(
        success=True,
        data=[BookingResponse.model_validate(booking) for booking in bookings],
    )


@router.post(
    "",
    response_model=APIResponse[BookingResponse],
    status_code=201,
)
def create_booking(payload: CreateBookingRequest, db: Session = Depends(get_db)):
    booking = booking_service.create_booking(
        db=db,
        service_type=payload.service_type,
        customer_id=payload.customer_id,
    )
    return APIResponse(success=True, data=BookingResponse.model_validate(booking))


@router.get("/{booking_id}", response_model=APIResponse[BookingResponse])
def get_booking(booking_id: int, db: Session = Depends(get_db)):
    booking = booking_service.get_booking(db=db, booking_id=booking_id)
    return APIResponse(success=True, data=BookingResponse.model_validate(booking))


@router.post("/{booking_id}/assign", response_model=APIResponse[BookingResponse])
def assign(booking_id: int, payload: AssignRequest, db: Session = Depends(get_db)):
    booking = booking_service.assign_provider(
        db=db,
        booking_id=booking_id,
        provider_id=payload.provider_id,
        provider_ids=payload.provider_ids,
        auto=payload.auto,
    )
    return APIResponse(success=True, data=BookingResponse.model_validate(booking))


@router.post("/{booking_id}/respond", response_model=APIResponse[TransitionResponse])
def respond(booking_id: int, payload: RespondRequest, db: Session = Depends(get_db)):
    result = booking_service.respond_to_booking(
        db=db,
        booking_id=booking_id,
        provider_id=payload.provider_id,
        accept=payload.accept,
    )
    return _transition_response(result)


@router.post("/{booking_id}/complete", response_model=APIResponse[TransitionResponse])
def complete(booking_id: int, db: Session = Depends(get_db)):
    result = booking_service.complete_booking(db=db, booking_id=booking_id)
    return _transition_response(result)


@router.post("/{booking_id}/cancel", response_model=APIResponse[TransitionResponse])
def cancel(
    booking_id: int,
    payload: ReasonRequest | None = None,
    db: Session = Depends(get_db),
):
    result = booking_service.cancel_booking(
        db=db,
        booking_id=booking_id,
        reason=payload.reason if payload else None,
    )
    return _transition_response(result)


@router.post("/{booking_id}/fail", response_model=APIResponse[TransitionResponse])
def fail(
    booking_id: int,
    payload: ReasonRequest | None = None,
    db: Session = Depends(get_db),
):
    result = booking_service.fail_booking(
        db=db,
        booking_id=booking_id,
        reason=payload.reason if payload else None,
    )
    return _transition_response(result)


@router.get("/{booking_id}/history", response_model=APIResponse[List[BookingEventResponse]])
def history(booking_id: int, db: Session = Depends(get_db)):
    events = get_booking_history(db=db, booking_id=booking_id)
    return APIResponse(
        success=True,
        data=[BookingEventResponse.model_validate(event) for event in events],
    )
