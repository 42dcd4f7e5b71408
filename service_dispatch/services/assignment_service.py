"""Provider selection, booking hand-off and FIFO queue drain.

Every write here is a conditional UPDATE that restates the state it expects
to replace, so two requests racing for the same booking or provider cannot
both win. Callers own the transaction (see ``db.session.atomic``).
"""

import logging
import random
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, aliased

from service_dispatch.core.config import ASSIGNMENT_RANDOM_SEED
from service_dispatch.core.domain_exceptions import InvalidTransitionError
from service_dispatch.core.enums import (
    ACTIVE_STATUSES,
    BookingStatus,
    ChangedBy,
    ServiceType,
)
from service_dispatch.db.models import Booking, Provider
from service_dispatch.services.audit_log import log_booking_event
from service_dispatch.services.availability_service import (
    claim_provider,
    has_active_booking,
    set_provider_availability,
)

logger = logging.getLogger(__name__)

# Upper bound on re-running a queue claim that lost to a concurrent drain.
MAX_CLAIM_ATTEMPTS = 5

QUEUE_DRAIN_NOTE = "Auto-assigned to provider after previous job completion"

TieBreaker = Callable[[Sequence[int]], int]

_tie_break_random = random.Random(ASSIGNMENT_RANDOM_SEED)


def default_tie_breaker(candidates: Sequence[int]) -> int:
    return _tie_break_random.choice(list(candidates))


@dataclass(frozen=True)
class NextAssignment:
    """Summary of the booking a freed provider was moved onto."""

    booking_id: int
    customer_id: str | None
    service_type: ServiceType
    status: BookingStatus

    @classmethod
    def from_booking(cls, booking: Booking) -> "NextAssignment":
        return cls(
            booking_id=booking.id,
            customer_id=booking.customer_id,
            service_type=booking.service_type,
            status=booking.status,
        )


def find_available_provider(
    db: Session,
    service_type: ServiceType,
    exclude_provider_ids: Iterable[int | None] = (),
) -> Provider | None:
    """Oldest available provider of the given type, skipping excluded ids."""
    exclude = [pid for pid in exclude_provider_ids if pid is not None]

    query = (
        select(Provider)
        .where(Provider.service_type == service_type)
        .where(Provider.is_available.is_(True))
    )
    if exclude:
        query = query.where(Provider.id.not_in(exclude))

    return db.scalars(
        query.order_by(Provider.created_at.asc(), Provider.id.asc()).limit(1)
    ).first()


def count_active_bookings(db: Session, provider_ids: Sequence[int]) -> dict[int, int]:
    counts = {provider_id: 0 for provider_id in provider_ids}
    if not counts:
        return counts

    rows = db.execute(
        select(Booking.provider_id, func.count(Booking.id))
        .where(Booking.provider_id.in_(list(counts)))
        .where(Booking.status.in_(ACTIVE_STATUSES))
        .group_by(Booking.provider_id)
    ).all()
    for provider_id, active_count in rows:
        counts[provider_id] = int(active_count)
    return counts


def pick_provider_id(
    db: Session,
    provider_ids: Iterable[int | None] | None,
    choose: TieBreaker | None = None,
) -> int | None:
    """Pick the candidate with the fewest ASSIGNED/IN_PROGRESS bookings.

    Candidates are de-duplicated first. Ties go to ``choose``, which defaults
    to a seeded random choice.
    """
    unique_ids = list(dict.fromkeys(pid for pid in (provider_ids or []) if pid is not None))
    if not unique_ids:
        return None

    counts = count_active_bookings(db, unique_ids)
    best_count = min(counts.values())
    best_ids = [pid for pid in unique_ids if counts[pid] == best_count]

    chooser = choose or default_tie_breaker
    return chooser(best_ids)


def assign_if_pending(db: Session, booking_id: int, provider_id: int) -> bool:
    """PENDING -> ASSIGNED for one booking. False if it was no longer PENDING."""
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking_id)
        .where(Booking.status == BookingStatus.PENDING)
        .values(status=BookingStatus.ASSIGNED, provider_id=provider_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def hand_off(
    db: Session,
    booking: Booking,
    exclude_provider_ids: Iterable[int | None] = (),
    note_template: str = "Auto-assigned to {name}",
) -> Provider | None:
    """Give a PENDING booking to the oldest free provider of its type.

    The provider is claimed, the booking moved to ASSIGNED and the event
    logged. Returns None when no provider is free.
    """
    excluded = {pid for pid in exclude_provider_ids if pid is not None}

    while True:
        provider = find_available_provider(db, booking.service_type, excluded)
        if provider is None:
            return None
        if claim_provider(db, provider.id):
            break
        logger.warning(
            "Provider %s was claimed concurrently; trying the next one.",
            provider.id,
            extra={"booking_id": booking.id},
        )
        excluded.add(provider.id)

    if not assign_if_pending(db, booking.id, provider.id):
        set_provider_availability(db, provider.id, True)
        db.refresh(booking)
        raise InvalidTransitionError(
            f"Booking {booking.id} is {booking.status.value}, not PENDING; assignment not applied."
        )

    log_booking_event(
        db,
        booking_id=booking.id,
        old_status=BookingStatus.PENDING,
        new_status=BookingStatus.ASSIGNED,
        changed_by=ChangedBy.SYSTEM,
        note=note_template.format(name=provider.name),
    )
    db.refresh(booking)
    return provider


def _claim_next_pending(
    db: Session,
    provider_id: int,
    service_type: ServiceType,
    exclude_booking_ids: Sequence[int],
) -> int | None:
    # Pick and update in one statement; the outer status check rejects a row
    # another drain took between the subquery and the write.
    pending = aliased(Booking)
    oldest = (
        select(pending.id)
        .where(pending.service_type == service_type)
        .where(pending.status == BookingStatus.PENDING)
    )
    if exclude_booking_ids:
        oldest = oldest.where(pending.id.not_in(exclude_booking_ids))
    oldest = (
        oldest.order_by(pending.created_at.asc(), pending.id.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )

    return db.execute(
        update(Booking)
        .where(Booking.id == oldest)
        .where(Booking.status == BookingStatus.PENDING)
        .values(status=BookingStatus.ASSIGNED, provider_id=provider_id)
        .returning(Booking.id)
        .execution_options(synchronize_session=False)
    ).scalar_one_or_none()


def _has_pending(db: Session, service_type: ServiceType, exclude_booking_ids: Sequence[int]) -> bool:
    query = (
        select(Booking.id)
        .where(Booking.service_type == service_type)
        .where(Booking.status == BookingStatus.PENDING)
    )
    if exclude_booking_ids:
        query = query.where(Booking.id.not_in(exclude_booking_ids))
    return db.scalar(query.limit(1)) is not None


def auto_assign_to_next_in_queue(
    db: Session,
    provider_id: int,
    service_type: ServiceType,
    exclude_booking_ids: Iterable[int] = (),
    note: str = QUEUE_DRAIN_NOTE,
) -> Booking | None:
    """Move the oldest PENDING booking of ``service_type`` onto ``provider_id``.

    Returns the claimed booking, or None when the queue is empty. The caller
    decides what to do with an idle provider (see ``release_provider``).
    """
    exclude = list(exclude_booking_ids)

    claimed_id = None
    for attempt in range(1, MAX_CLAIM_ATTEMPTS + 1):
        claimed_id = _claim_next_pending(db, provider_id, service_type, exclude)
        if claimed_id is not None:
            break
        if not _has_pending(db, service_type, exclude):
            return None
        logger.warning(
            "Queue claim for provider %s lost a race (attempt %d/%d).",
            provider_id,
            attempt,
            MAX_CLAIM_ATTEMPTS,
        )

    if claimed_id is None:
        logger.warning(
            "Gave up draining %s queue for provider %s; reconciliation will retry.",
            service_type.value,
            provider_id,
        )
        return None

    set_provider_availability(db, provider_id, False)
    log_booking_event(
        db,
        booking_id=claimed_id,
        old_status=BookingStatus.PENDING,
        new_status=BookingStatus.ASSIGNED,
        changed_by=ChangedBy.SYSTEM,
        note=note,
    )
    return db.get(Booking, claimed_id, populate_existing=True)


def release_provider(
    db: Session,
    provider_id: int,
    service_type: ServiceType,
    exclude_booking_ids: Iterable[int] = (),
    note: str = QUEUE_DRAIN_NOTE,
) -> NextAssignment | None:
    """Hand a freed provider the next queued booking, or mark it available.

    A provider still holding another active booking (possible after an admin
    override) stays busy and is not given more work.
    """
    if has_active_booking(db, provider_id):
        set_provider_availability(db, provider_id, False)
        logger.warning(
            "Provider %s still holds an active booking; left busy, queue not drained.",
            provider_id,
        )
        return None

    next_booking = auto_assign_to_next_in_queue(
        db,
        provider_id=provider_id,
        service_type=service_type,
        exclude_booking_ids=exclude_booking_ids,
        note=note,
    )
    if next_booking is None:
        set_provider_availability(db, provider_id, True)
        logger.info("Provider %s is now available.", provider_id)
        return None

    logger.info(
        "Provider %s moved to queued booking %s.",
        provider_id,
        next_booking.id,
        extra={"booking_id": next_booking.id},
    )
    return NextAssignment.from_booking(next_booking)


def assign_waiting_bookings(db: Session) -> list[Booking]:
    """Offer every PENDING booking, oldest first, to a free provider of its type."""
    waiting = db.scalars(
        select(Booking)
        .where(Booking.status == BookingStatus.PENDING)
        .order_by(Booking.created_at.asc(), Booking.id.asc())
    ).all()

    assigned: list[Booking] = []
    exhausted: set[ServiceType] = set()
    for booking in waiting:
        if booking.service_type in exhausted:
            continue
        try:
            provider = hand_off(
                db,
                booking,
                note_template="Assigned to {name} during availability reconciliation",
            )
        except InvalidTransitionError:
            logger.info("Booking %s left PENDING during the sweep; skipped.", booking.id)
            continue
        if provider is None:
            exhausted.add(booking.service_type)
            continue
        assigned.append(booking)

    return assigned
