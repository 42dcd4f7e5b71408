"""Provider free/busy flag.

The flag is a stored copy of "has no ASSIGNED or IN_PROGRESS booking".
Assignment paths keep it current; reconcile_provider_availability
recomputes it from the bookings table when the two drift.
"""

import logging
from collections.abc import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from service_dispatch.core.enums import ACTIVE_STATUSES
from service_dispatch.db.models import Booking, Provider

logger = logging.getLogger(__name__)


def set_provider_availability(db: Session, provider_id: int | None, is_available: bool) -> None:
    """Set the flag. No-op for a missing id; repeating a call changes nothing."""
    if provider_id is None:
        return

    db.execute(
        update(Provider)
        .where(Provider.id == provider_id)
        .where(Provider.is_available.is_not(bool(is_available)))
        .values(is_available=bool(is_available))
        .execution_options(synchronize_session=False)
    )


def claim_provider(db: Session, provider_id: int) -> bool:
    """Flip an available provider to busy. False if someone else got there first."""
    result = db.execute(
        update(Provider)
        .where(Provider.id == provider_id)
        .where(Provider.is_available.is_(True))
        .values(is_available=False)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def has_active_booking(db: Session, provider_id: int) -> bool:
    """True while any ASSIGNED/IN_PROGRESS booking references the provider."""
    return (
        db.scalar(
            select(Booking.id)
            .where(Booking.provider_id == provider_id)
            .where(Booking.status.in_(ACTIVE_STATUSES))
            .limit(1)
        )
        is not None
    )


def active_provider_ids(db: Session) -> set[int]:
    return set(
        db.scalars(
            select(Booking.provider_id)
            .where(Booking.provider_id.is_not(None))
            .where(Booking.status.in_(ACTIVE_STATUSES))
            .distinct()
        ).all()
    )


def reconcile_provider_availability(
    db: Session,
    provider_ids: Iterable[int | None] | None = None,
) -> list[int]:
    """Recompute availability from the active-booking set.

    Limited to ``provider_ids`` when given. Returns the ids whose flag changed.
    """
    query = select(Provider.id, Provider.is_available)
    if provider_ids is not None:
        wanted = {pid for pid in provider_ids if pid is not None}
        if not wanted:
            return []
        query = query.where(Provider.id.in_(wanted))

    busy = active_provider_ids(db)
    changed: list[int] = []
    for provider_id, is_available in db.execute(query.order_by(Provider.id)).all():
        expected = provider_id not in busy
        if is_available != expected:
            set_provider_availability(db, provider_id, expected)
            changed.append(provider_id)

    if changed:
        logger.warning("Corrected availability drift for providers %s", changed)
    return changed
