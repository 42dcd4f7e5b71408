"""Operator endpoints. No authentication is applied here."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from service_dispatch.db.session import get_db
from service_dispatch.schemas.admin import AdminOverrideRequest, ReconcileResponse
from service_dispatch.schemas.booking import BookingResponse
from service_dispatch.schemas.common import APIResponse
from service_dispatch.services.admin_service import UNSET, admin_override
from service_dispatch.services.reconciliation_service import run_reconciliation

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/bookings/{booking_id}/override", response_model=APIResponse[BookingResponse])
def override_booking(
    booking_id: int,
    payload: AdminOverrideRequest,
    db: Session = Depends(get_db),
):
    provider_id = payload.provider_id if "provider_id" in payload.model_fields_set else UNSET
    booking = admin_override(
        db=db,
        booking_id=booking_id,
        status=payload.status,
        provider_id=provider_id,
    )
    return APIResponse(success=True, data=BookingResponse.model_validate(booking))


@router.post("/providers/reconcile", response_model=APIResponse[ReconcileResponse])
def reconcile(db: Session = Depends(get_db)):
    report = run_reconciliation(db)
    return APIResponse(
        success=True,
        data=ReconcileResponse(
            corrected_provider_ids=report.corrected_provider_ids,
            assigned_booking_ids=report.assigned_booking_ids,
        ),
    )
