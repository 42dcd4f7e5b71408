from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from service_dispatch.db.session import get_db
from service_dispatch.schemas.booking import BookingResponse
from service_dispatch.schemas.common import APIResponse
from service_dispatch.schemas.provider import CreateProviderRequest, ProviderResponse
from service_dispatch.services import provider_service
from service_dispatch.services.booking_service import LIST_LIMIT

router = APIRouter(prefix="/providers", tags=["providers"])


@router.get("", response_model=APIResponse[List[ProviderResponse]])
def list_providers(service_type: str | None = None, db: Session = Depends(get_db)):
    providers = provider_service.list_providers(db=db, service_type=service_type)
    return APIResponse(
        success=True,
        data=[ProviderResponse.model_validate(provider) for provider in providers],
    )


@router.post(
    "",
    response_model=APIResponse[ProviderResponse],
    status_code=201,
)
def create_provider(payload: CreateProviderRequest, db: Session = Depends(get_db)):
    provider = provider_service.create_provider(
        db=db,
        name=payload.name,
        service_type=payload.service_type,
    )
    return APIResponse(success=True, data=ProviderResponse.model_validate(provider))


@router.get("/{provider_id}/bookings", response_model=APIResponse[List[BookingResponse]])
def provider_bookings(
    provider_id: int,
    status: str | None = None,
    limit: int = Query(default=LIST_LIMIT, ge=1, le=LIST_LIMIT),
    db: Session = Depends(get_db),
):
    bookings = provider_service.list_provider_bookings(
        db=db,
        provider_id=provider_id,
        status=status,
        limit=limit,
    )
    return APIResponse(
        success=True,
        data=[BookingResponse.model_validate(booking) for booking in bookings],
    )
