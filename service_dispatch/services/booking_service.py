"""Booking lifecycle: legal transitions and the side effects each one triggers."""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from service_dispatch.core.domain_exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from service_dispatch.core.enums import (
    ACTIVE_STATUSES,
    BookingStatus,
    ChangedBy,
    ServiceType,
    parse_booking_status,
    parse_service_type,
)
from service_dispatch.core.error_codes import ErrorCode
from service_dispatch.db.models import Booking, Provider
from service_dispatch.db.session import atomic
from service_dispatch.services.assignment_service import (
    NextAssignment,
    TieBreaker,
    hand_off,
    pick_provider_id,
    release_provider,
)
from service_dispatch.services.audit_log import log_booking_event
from service_dispatch.services.availability_service import claim_provider

logger = logging.getLogger(__name__)

PENDING = BookingStatus.PENDING
ASSIGNED = BookingStatus.ASSIGNED
IN_PROGRESS = BookingStatus.IN_PROGRESS
COMPLETED = BookingStatus.COMPLETED
CANCELLED = BookingStatus.CANCELLED
FAILED = BookingStatus.FAILED

# Fail is accepted from every status, hence the FAILED edge everywhere.
# PENDING -> PENDING only appears as the creation record.
ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    PENDING: frozenset({PENDING, ASSIGNED, CANCELLED, FAILED}),
    ASSIGNED: frozenset({IN_PROGRESS, PENDING, CANCELLED, FAILED}),
    IN_PROGRESS: frozenset({COMPLETED, FAILED}),
    COMPLETED: frozenset({FAILED}),
    CANCELLED: frozenset({FAILED}),
    FAILED: frozenset({FAILED}),
}

CANCELLABLE_STATUSES = (PENDING, ASSIGNED)

CREATE_BOOKING_MAX_ATTEMPTS = 3
LIST_LIMIT = 200

DEFAULT_CANCELLATION_REASON = "Cancelled by user"
DEFAULT_FAILURE_REASON = "Marked as failed by system"


@dataclass
class TransitionResult:
    booking: Booking
    next_assignment: NextAssignment | None = None
    provider_released: bool = False
    reassigned_provider_id: int | None = None


def is_allowed_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def assert_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not is_allowed_transition(current, target):
        raise InvalidTransitionError(
            f"Invalid booking transition: {current.value} -> {target.value}"
        )


def _get_booking(db: Session, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise NotFoundError("Booking not found.", code=ErrorCode.BOOKING_NOT_FOUND)
    return booking


def _get_provider(db: Session, provider_id: int) -> Provider:
    provider = db.get(Provider, provider_id)
    if provider is None:
        raise NotFoundError("Provider not found.", code=ErrorCode.PROVIDER_NOT_FOUND)
    return provider


def _same_provider(provider_id: int | None):
    if provider_id is None:
        return Booking.provider_id.is_(None)
    return Booking.provider_id == provider_id


def _transition(db: Session, booking: Booking, target: BookingStatus, *conditions, **values) -> bool:
    """Compare-and-set from the status we last read to ``target``."""
    assert_transition(booking.status, target)
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id)
        .where(Booking.status == booking.status)
        .where(*conditions)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _raise_stale(db: Session, booking: Booking, action: str) -> None:
    observed = booking.status
    db.refresh(booking)
    logger.warning(
        "Lost update on booking %s: expected %s, found %s.",
        booking.id,
        observed.value,
        booking.status.value,
        extra={"booking_id": booking.id},
    )
    raise InvalidTransitionError(
        f"Booking changed to {booking.status.value} concurrently; {action} not applied."
    )


def _release(
    db: Session,
    provider_id: int | None,
    service_type: ServiceType,
    exclude_booking_ids: tuple[int, ...] = (),
) -> tuple[NextAssignment | None, bool]:
    """Run the freeing path; the flag reports whether the provider ended up available."""
    if provider_id is None:
        return None, False
    next_assignment = release_provider(
        db,
        provider_id=provider_id,
        service_type=service_type,
        exclude_booking_ids=exclude_booking_ids,
    )
    if next_assignment is not None:
        return next_assignment, False
    is_available = db.scalar(select(Provider.is_available).where(Provider.id == provider_id))
    return None, bool(is_available)


def _matching_candidates(
    db: Session,
    provider_ids: list[int] | None,
    service_type: ServiceType,
) -> list[int]:
    """Candidate ids that exist and serve ``service_type``, in the caller's order."""
    wanted = [pid for pid in (provider_ids or []) if pid is not None]
    if not wanted:
        return []
    matching = set(
        db.scalars(
            select(Provider.id)
            .where(Provider.id.in_(wanted))
            .where(Provider.service_type == service_type)
        ).all()
    )
    return [pid for pid in wanted if pid in matching]


def _generate_customer_id() -> str:
    return f"CUST-{uuid.uuid4().hex[:12].upper()}"


# -------------------------------------------------------------------
# Reads
# -------------------------------------------------------------------


def get_booking(db: Session, booking_id: int) -> Booking:
    return _get_booking(db, booking_id)


def list_bookings(
    db: Session,
    status: str | None = None,
    customer_id: str | None = None,
    provider_id: int | None = None,
    limit: int = LIST_LIMIT,
) -> list[Booking]:
    """Newest bookings first, optionally filtered."""
    query = select(Booking)
    if status is not None:
        query = query.where(Booking.status == parse_booking_status(status))
    if customer_id is not None:
        query = query.where(Booking.customer_id == customer_id)
    if provider_id is not None:
        query = query.where(Booking.provider_id == provider_id)

    limit = max(1, min(limit, LIST_LIMIT))
    return list(
        db.scalars(
            query.order_by(Booking.created_at.desc(), Booking.id.desc()).limit(limit)
        ).all()
    )


# -------------------------------------------------------------------
# Transitions
# -------------------------------------------------------------------


def create_booking(db: Session, service_type: str, customer_id: str | None = None) -> Booking:
    """Create a PENDING booking and try to hand it to a free provider straight away.

    Without a ``customer_id`` one is generated; only a generated id is retried
    on a unique collision. A caller-supplied duplicate fails at once.
    """
    service_type = parse_service_type(service_type)
    supplied_customer_id = (customer_id or "").strip() or None

    for attempt in range(1, CREATE_BOOKING_MAX_ATTEMPTS + 1):
        customer_id = supplied_customer_id or _generate_customer_id()
        try:
            with atomic(db):
                booking = Booking(
                    service_type=service_type,
                    customer_id=customer_id,
                    status=PENDING,
                )
                db.add(booking)
                db.flush()

                log_booking_event(
                    db,
                    booking_id=booking.id,
                    old_status=PENDING,
                    new_status=PENDING,
                    changed_by=ChangedBy.SYSTEM,
                    note="Booking created",
                )
                hand_off(db, booking)
            break
        except PersistenceError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            if supplied_customer_id is not None:
                raise ValidationError(
                    f"A booking for customer '{supplied_customer_id}' already exists.",
                    code=ErrorCode.DUPLICATE_CUSTOMER,
                ) from exc
            logger.warning(
                "Generated customer_id %s collided (attempt %d/%d).",
                customer_id,
                attempt,
                CREATE_BOOKING_MAX_ATTEMPTS,
            )
            if attempt == CREATE_BOOKING_MAX_ATTEMPTS:
                raise

    db.refresh(booking)
    logger.info(
        "Booking created",
        extra={
            "booking_id": booking.id,
            "customer_id": customer_id,
            "status": booking.status.value,
        },
    )
    return booking


def assign_provider(
    db: Session,
    booking_id: int,
    provider_id: int | None = None,
    provider_ids: list[int] | None = None,
    auto: bool = False,
    choose: TieBreaker | None = None,
) -> Booking:
    """Assign a PENDING booking to one provider, or to the least-loaded candidate.

    Candidates of another service type are ignored. The chosen provider must
    be free; a busy one raises ConflictError.
    """
    if provider_id is None and not auto and provider_ids is None:
        raise ValidationError(
            "Provide `provider_id` for manual assignment, "
            "or `provider_ids` (non-empty list) for automatic assignment."
        )

    with atomic(db):
        booking = _get_booking(db, booking_id)
        if booking.status != PENDING:
            raise InvalidTransitionError("Only PENDING bookings can be assigned.")

        if provider_id is not None:
            provider = _get_provider(db, provider_id)
            if provider.service_type != booking.service_type:
                raise ValidationError(
                    f"Provider {provider.id} handles {provider.service_type.value}, "
                    f"booking needs {booking.service_type.value}."
                )
            note = "Provider assigned"
        else:
            candidate_ids = _matching_candidates(db, provider_ids, booking.service_type)
            chosen_id = pick_provider_id(db, candidate_ids, choose=choose)
            if chosen_id is None:
                raise ValidationError(
                    f"No candidate provider handles {booking.service_type.value}."
                )
            provider = _get_provider(db, chosen_id)
            note = "Provider auto-assigned"

        if not claim_provider(db, provider.id):
            raise ConflictError(f"Provider {provider.id} is busy with another booking.")

        if not _transition(db, booking, ASSIGNED, provider_id=provider.id):
            _raise_stale(db, booking, "assignment")

        log_booking_event(
            db,
            booking_id=booking.id,
            old_status=PENDING,
            new_status=ASSIGNED,
            changed_by=ChangedBy.SYSTEM,
            note=note,
        )

    db.refresh(booking)
    return booking


def _diagnose_respond_failure(db: Session, booking: Booking, provider_id: int) -> None:
    db.refresh(booking)
    if booking.status != ASSIGNED:
        raise InvalidTransitionError(
            f"Booking changed to {booking.status.value} concurrently; response not applied."
        )
    if booking.provider_id != provider_id:
        raise ForbiddenError("This booking is assigned to a different provider.")
    raise ConflictError(
        "Provider already has an active booking in progress. "
        "Complete or cancel it before accepting a new one."
    )


def _accept(db: Session, booking: Booking, provider_id: int) -> TransitionResult:
    in_progress_id = db.scalar(
        select(Booking.id)
        .where(Booking.provider_id == provider_id)
        .where(Booking.status == IN_PROGRESS)
        .where(Booking.id != booking.id)
        .limit(1)
    )
    if in_progress_id is not None:
        raise ConflictError(
            f"Provider already has booking {in_progress_id} in progress. "
            "Complete or cancel it before accepting a new one."
        )

    # Re-checked inside the UPDATE so two accepts for one provider cannot both land.
    other = aliased(Booking)
    already_busy = (
        select(other.id)
        .where(other.provider_id == provider_id)
        .where(other.status == IN_PROGRESS)
        .where(other.id != booking.id)
        .exists()
    )
    if not _transition(db, booking, IN_PROGRESS, Booking.provider_id == provider_id, ~already_busy):
        _diagnose_respond_failure(db, booking, provider_id)

    log_booking_event(
        db,
        booking_id=booking.id,
        old_status=ASSIGNED,
        new_status=IN_PROGRESS,
        changed_by=ChangedBy.PROVIDER,
        note="Provider accepted booking",
    )
    db.refresh(booking)
    return TransitionResult(booking=booking)


def _reject(db: Session, booking: Booking, provider_id: int) -> TransitionResult:
    service_type = booking.service_type

    if not _transition(
        db,
        booking,
        PENDING,
        Booking.provider_id == provider_id,
        provider_id=None,
        rejection_count=Booking.rejection_count + 1,
    ):
        _diagnose_respond_failure(db, booking, provider_id)

    log_booking_event(
        db,
        booking_id=booking.id,
        old_status=ASSIGNED,
        new_status=PENDING,
        changed_by=ChangedBy.PROVIDER,
        note="Provider rejected booking",
    )
    db.refresh(booking)

    replacement = hand_off(
        db,
        booking,
        exclude_provider_ids=[provider_id],
        note_template="Re-assigned after rejection to {name}",
    )

    # The rejecting provider never gets the booking it just turned down.
    next_assignment, released = _release(
        db,
        provider_id,
        service_type,
        exclude_booking_ids=(booking.id,),
    )
    return TransitionResult(
        booking=booking,
        next_assignment=next_assignment,
        provider_released=released,
        reassigned_provider_id=replacement.id if replacement else None,
    )


def respond_to_booking(db: Session, booking_id: int, provider_id: int, accept: bool) -> TransitionResult:
    """Provider accepts (-> IN_PROGRESS) or rejects (-> PENDING, re-queued)."""
    if not isinstance(accept, bool):
        raise ValidationError("accept must be a boolean.")
    if provider_id is None:
        raise ValidationError("provider_id is required.")

    with atomic(db):
        booking = _get_booking(db, booking_id)
        if booking.status != ASSIGNED:
            raise InvalidTransitionError("Provider can respond only to ASSIGNED bookings.")
        if booking.provider_id != provider_id:
            raise ForbiddenError("This booking is assigned to a different provider.")

        result = _accept(db, booking, provider_id) if accept else _reject(db, booking, provider_id)

    logger.info(
        "Provider %s %s booking %s",
        provider_id,
        "accepted" if accept else "rejected",
        booking_id,
        extra={"booking_id": booking_id},
    )
    return result


def complete_booking(db: Session, booking_id: int) -> TransitionResult:
    with atomic(db):
        booking = _get_booking(db, booking_id)
        if booking.status != IN_PROGRESS:
            raise InvalidTransitionError("Job can be completed only if booking is IN_PROGRESS.")

        provider_id = booking.provider_id
        if not _transition(db, booking, COMPLETED, _same_provider(provider_id)):
            _raise_stale(db, booking, "completion")

        log_booking_event(
            db,
            booking_id=booking.id,
            old_status=IN_PROGRESS,
            new_status=COMPLETED,
            changed_by=ChangedBy.PROVIDER,
            note="Job completed",
        )
        next_assignment, released = _release(db, provider_id, booking.service_type)

    db.refresh(booking)
    return TransitionResult(
        booking=booking,
        next_assignment=next_assignment,
        provider_released=released,
    )


def cancel_booking(db: Session, booking_id: int, reason: str | None = None) -> TransitionResult:
    """Cancel a PENDING or ASSIGNED booking and free its provider."""
    reason = (reason or "").strip() or DEFAULT_CANCELLATION_REASON

    with atomic(db):
        booking = _get_booking(db, booking_id)
        if booking.status not in CANCELLABLE_STATUSES:
            raise InvalidTransitionError("Booking cannot be cancelled at this stage.")

        old_status = booking.status
        freed_provider_id = booking.provider_id
        if not _transition(
            db,
            booking,
            CANCELLED,
            _same_provider(freed_provider_id),
            provider_id=None,
            cancellation_reason=reason,
        ):
            _raise_stale(db, booking, "cancellation")

        log_booking_event(
            db,
            booking_id=booking.id,
            old_status=old_status,
            new_status=CANCELLED,
            changed_by=ChangedBy.CUSTOMER,
            note=reason,
        )
        next_assignment, released = _release(db, freed_provider_id, booking.service_type)

    db.refresh(booking)
    return TransitionResult(
        booking=booking,
        next_assignment=next_assignment,
        provider_released=released,
    )


def fail_booking(db: Session, booking_id: int, reason: str | None = None) -> TransitionResult:
    """Mark a booking FAILED from any status."""
    reason = (reason or "").strip() or DEFAULT_FAILURE_REASON

    with atomic(db):
        booking = _get_booking(db, booking_id)

        old_status = booking.status
        provider_id = booking.provider_id
        if not _transition(
            db,
            booking,
            FAILED,
            _same_provider(provider_id),
            failure_reason=reason,
        ):
            _raise_stale(db, booking, "failure")

        log_booking_event(
            db,
            booking_id=booking.id,
            old_status=old_status,
            new_status=FAILED,
            changed_by=ChangedBy.SYSTEM,
            note=reason,
        )

        # A provider on a finished booking was already released.
        next_assignment, released = None, False
        if old_status in ACTIVE_STATUSES:
            next_assignment, released = _release(db, provider_id, booking.service_type)

    db.refresh(booking)
    return TransitionResult(
        booking=booking,
        next_assignment=next_assignment,
        provider_released=released,
    )
