"""Append-only booking status history."""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from service_dispatch.core.domain_exceptions import NotFoundError
from service_dispatch.core.enums import BookingStatus, ChangedBy
from service_dispatch.core.error_codes import ErrorCode
from service_dispatch.db.models import Booking, BookingEvent, utcnow

logger = logging.getLogger(__name__)


def log_booking_event(
    db: Session,
    booking_id: int,
    old_status: BookingStatus,
    new_status: BookingStatus,
    changed_by: ChangedBy,
    note: str | None = None,
    timestamp: datetime | None = None,
) -> BookingEvent:
    """Record one status change inside the caller's transaction."""
    event = BookingEvent(
        booking_id=booking_id,
        old_status=old_status,
        new_status=new_status,
        changed_by=changed_by,
        note=note,
        timestamp=timestamp or utcnow(),
    )
    db.add(event)
    db.flush()

    logger.info(
        "Booking %s: %s -> %s by %s",
        booking_id,
        old_status.value,
        new_status.value,
        changed_by.value,
        extra={"booking_id": booking_id},
    )
    return event


def get_booking_history(db: Session, booking_id: int) -> list[BookingEvent]:
    """Return every event for a booking, oldest first."""
    if db.get(Booking, booking_id) is None:
        raise NotFoundError("Booking not found.", code=ErrorCode.BOOKING_NOT_FOUND)

    return list(
        db.scalars(
            select(BookingEvent)
            .where(BookingEvent.booking_id == booking_id)
            .order_by(BookingEvent.timestamp.asc(), BookingEvent.id.asc())
        ).all()
    )
