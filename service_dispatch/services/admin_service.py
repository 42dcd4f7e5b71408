"""Operator force-transition, outside the normal transition table."""

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from service_dispatch.core.domain_exceptions import ConflictError, NotFoundError
from service_dispatch.core.enums import ChangedBy, parse_booking_status
from service_dispatch.core.error_codes import ErrorCode
from service_dispatch.db.models import Booking, Provider
from service_dispatch.db.session import atomic
from service_dispatch.services.audit_log import log_booking_event
from service_dispatch.services.availability_service import reconcile_provider_availability

logger = logging.getLogger(__name__)

ADMIN_OVERRIDE_NOTE = "Admin override"
MAX_OVERRIDE_ATTEMPTS = 5


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Distinguishes "leave provider as is" from an explicit None (clear it).
UNSET = _Unset()


def admin_override(
    db: Session,
    booking_id: int,
    status: str | None = None,
    provider_id=UNSET,
) -> Booking:
    """Force a booking's status and/or provider.

    Both provider flags touched are recomputed from the bookings table
    afterwards. Queues are not drained.
    """
    new_status = parse_booking_status(status) if status is not None else None

    with atomic(db):
        if provider_id is not UNSET and provider_id is not None:
            if db.get(Provider, provider_id) is None:
                raise NotFoundError("Provider not found.", code=ErrorCode.PROVIDER_NOT_FOUND)

        for attempt in range(1, MAX_OVERRIDE_ATTEMPTS + 1):
            booking = db.get(Booking, booking_id, populate_existing=True)
            if booking is None:
                raise NotFoundError("Booking not found.", code=ErrorCode.BOOKING_NOT_FOUND)

            old_status = booking.status
            old_provider_id = booking.provider_id
            target_status = new_status or old_status
            target_provider_id = old_provider_id if provider_id is UNSET else provider_id

            provider_match = (
                Booking.provider_id.is_(None)
                if old_provider_id is None
                else Booking.provider_id == old_provider_id
            )
            result = db.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .where(Booking.status == old_status)
                .where(provider_match)
                .values(status=target_status, provider_id=target_provider_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                break
            logger.warning(
                "Admin override on booking %s lost a race (attempt %d/%d).",
                booking_id,
                attempt,
                MAX_OVERRIDE_ATTEMPTS,
                extra={"booking_id": booking_id},
            )
        else:
            raise ConflictError(
                "Booking kept changing while the override was applied; try again.",
                code=ErrorCode.CONCURRENT_UPDATE,
            )

        reconcile_provider_availability(db, [old_provider_id, target_provider_id])
        log_booking_event(
            db,
            booking_id=booking_id,
            old_status=old_status,
            new_status=target_status,
            changed_by=ChangedBy.ADMIN,
            note=ADMIN_OVERRIDE_NOTE,
        )

    db.refresh(booking)
    logger.info(
        "Admin override applied",
        extra={
            "booking_id": booking_id,
            "status": booking.status.value,
            "provider_id": booking.provider_id,
        },
    )
    return booking
