from contextlib import contextmanager

import pytest

from service_dispatch.core.domain_exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from service_dispatch.core.enums import BookingStatus, ChangedBy, ServiceType
from service_dispatch.core.error_codes import ErrorCode
from service_dispatch.services import booking_service
from service_dispatch.services.admin_service import admin_override
from service_dispatch.services.audit_log import get_booking_history
from service_dispatch.services.availability_service import set_provider_availability

from helpers import assert_availability_consistent, reload


def test_create_assigns_available_provider(db, providers):
    cleaner = providers[ServiceType.CLEANING]

    booking = booking_service.create_booking(db, "cleaning", customer_id="cust-1")

    assert booking.status == BookingStatus.ASSIGNED
    assert booking.provider_id == cleaner.id
    assert reload(db, cleaner).is_available is False

    history = get_booking_history(db, booking.id)
    assert [(e.old_status, e.new_status) for e in history] == [
        (BookingStatus.PENDING, BookingStatus.PENDING),
        (BookingStatus.PENDING, BookingStatus.ASSIGNED),
    ]
    assert history[0].note == "Booking created"
    assert history[1].note == "Auto-assigned to Provider A"


def test_create_without_free_provider_stays_pending(db, providers):
    plumber = providers[ServiceType.PLUMBING]
    set_provider_availability(db, plumber.id, False)
    db.commit()

    booking = booking_service.create_booking(db, ServiceType.PLUMBING)

    assert booking.status == BookingStatus.PENDING
    assert booking.provider_id is None
    assert len(get_booking_history(db, booking.id)) == 1


def test_create_rejects_unknown_service_type(db, providers):
    with pytest.raises(ValidationError) as exc_info:
        booking_service.create_booking(db, "GARDENING")
    assert exc_info.value.code == ErrorCode.INVALID_SERVICE_TYPE


def test_duplicate_customer_id_is_rejected(db, providers):
    booking_service.create_booking(db, ServiceType.CLEANING, customer_id="dup")

    with pytest.raises(ValidationError) as exc_info:
        booking_service.create_booking(db, ServiceType.PLUMBING, customer_id="dup")

    assert exc_info.value.code == ErrorCode.DUPLICATE_CUSTOMER
    assert len(booking_service.list_bookings(db)) == 1


def test_caller_supplied_duplicate_is_not_retried(db, providers, monkeypatch):
    booking_service.create_booking(db, ServiceType.CLEANING, customer_id="dup")
    real_atomic = booking_service.atomic
    attempts = []

    @contextmanager
    def counting_atomic(session):
        attempts.append(1)
        with real_atomic(session):
            yield

    monkeypatch.setattr(booking_service, "atomic", counting_atomic)
    monkeypatch.setattr(booking_service, "_generate_customer_id", lambda: pytest.fail("generated an id"))

    with pytest.raises(ValidationError):
        booking_service.create_booking(db, ServiceType.CLEANING, customer_id=" dup ")

    assert len(attempts) == 1


def test_missing_customer_id_is_generated(db, providers):
    first = booking_service.create_booking(db, ServiceType.CLEANING)
    second = booking_service.create_booking(db, ServiceType.CLEANING)

    assert first.customer_id.startswith("CUST-")
    assert second.customer_id.startswith("CUST-")
    assert first.customer_id != second.customer_id


def test_generated_customer_id_collision_is_retried(db, providers, monkeypatch):
    booking_service.create_booking(db, ServiceType.CLEANING, customer_id="CUST-TAKEN")
    generated = iter(["CUST-TAKEN", "CUST-FRESH"])
    monkeypatch.setattr(booking_service, "_generate_customer_id", lambda: next(generated))

    booking = booking_service.create_booking(db, ServiceType.PLUMBING)

    assert booking.customer_id == "CUST-FRESH"
    assert len(booking_service.list_bookings(db)) == 2


def test_generated_customer_id_gives_up_after_max_attempts(db, providers, monkeypatch):
    booking_service.create_booking(db, ServiceType.CLEANING, customer_id="CUST-TAKEN")
    calls = []

    def always_taken():
        calls.append(1)
        return "CUST-TAKEN"

    monkeypatch.setattr(booking_service, "_generate_customer_id", always_taken)

    with pytest.raises(PersistenceError):
        booking_service.create_booking(db, ServiceType.PLUMBING)

    assert len(calls) == booking_service.CREATE_BOOKING_MAX_ATTEMPTS
    assert len(booking_service.list_bookings(db)) == 1


def test_complete_drains_queue_to_freed_provider(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    first = booking_service.create_booking(db, ServiceType.CLEANING)
    second = booking_service.create_booking(db, ServiceType.CLEANING)
    assert second.status == BookingStatus.PENDING

    booking_service.respond_to_booking(db, first.id, cleaner.id, accept=True)
    result = booking_service.complete_booking(db, first.id)

    assert result.booking.status == BookingStatus.COMPLETED
    assert result.booking.provider_id == cleaner.id
    assert result.provider_released is False
    assert result.next_assignment is not None
    assert result.next_assignment.booking_id == second.id
    assert result.next_assignment.status == BookingStatus.ASSIGNED

    second = reload(db, second)
    assert second.status == BookingStatus.ASSIGNED
    assert second.provider_id == cleaner.id
    assert get_booking_history(db, second.id)[-1].note == (
        "Auto-assigned to provider after previous job completion"
    )
    assert_availability_consistent(db)


def test_complete_with_empty_queue_frees_provider(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    booking = booking_service.create_booking(db, ServiceType.CLEANING)
    booking_service.respond_to_booking(db, booking.id, cleaner.id, accept=True)

    result = booking_service.complete_booking(db, booking.id)

    assert result.provider_released is True
    assert result.next_assignment is None
    assert reload(db, cleaner).is_available is True


def test_reject_reassigns_to_other_provider(db, providers, add_provider):
    first_cleaner = providers[ServiceType.CLEANING]
    second_cleaner = add_provider("Provider D", ServiceType.CLEANING)
    booking = booking_service.create_booking(db, ServiceType.CLEANING)
    assert booking.provider_id == first_cleaner.id

    result = booking_service.respond_to_booking(db, booking.id, first_cleaner.id, accept=False)

    booking = reload(db, booking)
    assert booking.rejection_count == 1
    assert booking.status == BookingStatus.ASSIGNED
    assert booking.provider_id == second_cleaner.id
    assert result.reassigned_provider_id == second_cleaner.id
    assert result.provider_released is True
    assert reload(db, first_cleaner).is_available is True

    notes = [event.note for event in get_booking_history(db, booking.id)]
    assert notes[-2:] == ["Provider rejected booking", "Re-assigned after rejection to Provider D"]
    assert_availability_consistent(db)


def test_reject_without_alternative_leaves_booking_pending(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    booking = booking_service.create_booking(db, ServiceType.CLEANING)

    result = booking_service.respond_to_booking(db, booking.id, cleaner.id, accept=False)

    assert result.booking.status == BookingStatus.PENDING
    assert result.booking.provider_id is None
    assert result.booking.rejection_count == 1
    assert result.reassigned_provider_id is None
    # The rejecting provider is not handed the booking it just turned down.
    assert result.next_assignment is None
    assert reload(db, cleaner).is_available is True


def test_rejecting_provider_drains_other_queued_booking(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    first = booking_service.create_booking(db, ServiceType.CLEANING)
    queued = booking_service.create_booking(db, ServiceType.CLEANING)

    result = booking_service.respond_to_booking(db, first.id, cleaner.id, accept=False)

    assert result.next_assignment is not None
    assert result.next_assignment.booking_id == queued.id
    assert reload(db, first).status == BookingStatus.PENDING
    assert reload(db, queued).provider_id == cleaner.id
    assert_availability_consistent(db)


def test_rejection_count_increments_per_reject(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    booking = booking_service.create_booking(db, ServiceType.CLEANING)

    for expected in (1, 2, 3):
        booking_service.respond_to_booking(db, booking.id, cleaner.id, accept=False)
        assert reload(db, booking).rejection_count == expected
        booking_service.assign_provider(db, booking.id, provider_id=cleaner.id)


def test_respond_by_wrong_provider_is_forbidden(db, providers):
    booking = booking_service.create_booking(db, ServiceType.CLEANING)

    with pytest.raises(ForbiddenError):
        booking_service.respond_to_booking(
            db, booking.id, providers[ServiceType.PLUMBING].id, accept=True
        )


def test_respond_requires_assigned_status(db, providers):
    set_provider_availability(db, providers[ServiceType.CLEANING].id, False)
    db.commit()
    booking = booking_service.create_booking(db, ServiceType.CLEANING)

    with pytest.raises(InvalidTransitionError):
        booking_service.respond_to_booking(
            db, booking.id, providers[ServiceType.CLEANING].id, accept=True
        )


def test_respond_requires_boolean_accept(db, providers):
    booking = booking_service.create_booking(db, ServiceType.CLEANING)

    with pytest.raises(ValidationError):
        booking_service.respond_to_booking(
            db, booking.id, providers[ServiceType.CLEANING].id, accept="yes"
        )


def test_accept_conflicts_with_other_in_progress_booking(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    first = booking_service.create_booking(db, ServiceType.CLEANING)
    booking_service.respond_to_booking(db, first.id, cleaner.id, accept=True)

    second = booking_service.create_booking(db, ServiceType.CLEANING)
    admin_override(db, second.id, status="ASSIGNED", provider_id=cleaner.id)

    with pytest.raises(ConflictError):
        booking_service.respond_to_booking(db, second.id, cleaner.id, accept=True)
    assert reload(db, second).status == BookingStatus.ASSIGNED


def test_manual_assign_to_busy_provider_conflicts(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    first = booking_service.create_booking(db, ServiceType.CLEANING)
    second = booking_service.create_booking(db, ServiceType.CLEANING)
    assert first.provider_id == cleaner.id

    with pytest.raises(ConflictError) as exc_info:
        booking_service.assign_provider(db, second.id, provider_id=cleaner.id)

    assert exc_info.value.code == ErrorCode.PROVIDER_BUSY
    assert reload(db, second).status == BookingStatus.PENDING
    assert_availability_consistent(db)


def test_provider_holding_two_bookings_stays_busy_after_completing_one(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    first = booking_service.create_booking(db, ServiceType.CLEANING)
    second = booking_service.create_booking(db, ServiceType.CLEANING)
    admin_override(db, second.id, status="ASSIGNED", provider_id=cleaner.id)
    booking_service.respond_to_booking(db, first.id, cleaner.id, accept=True)

    result = booking_service.complete_booking(db, first.id)

    assert result.next_assignment is None
    assert result.provider_released is False
    assert reload(db, cleaner).is_available is False

    third = booking_service.create_booking(db, ServiceType.CLEANING)
    assert third.status == BookingStatus.PENDING
    assert third.provider_id is None
    assert_availability_consistent(db)


def test_release_skips_drain_while_provider_still_busy(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    held = booking_service.create_booking(db, ServiceType.CLEANING)
    extra = booking_service.create_booking(db, ServiceType.CLEANING)
    queued = booking_service.create_booking(db, ServiceType.CLEANING)
    admin_override(db, extra.id, status="ASSIGNED", provider_id=cleaner.id)

    result = booking_service.cancel_booking(db, extra.id)

    assert result.next_assignment is None
    assert result.provider_released is False
    assert reload(db, held).provider_id == cleaner.id
    assert reload(db, queued).status == BookingStatus.PENDING
    assert_availability_consistent(db)


def test_cancel_in_progress_is_invalid(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    booking = booking_service.create_booking(db, ServiceType.CLEANING)
    booking_service.respond_to_booking(db, booking.id, cleaner.id, accept=True)

    with pytest.raises(InvalidTransitionError):
        booking_service.cancel_booking(db, booking.id)

    assert reload(db, booking).status == BookingStatus.IN_PROGRESS


def test_cancel_assigned_frees_provider_and_records_reason(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    booking = booking_service.create_booking(db, ServiceType.CLEANING)

    result = booking_service.cancel_booking(db, booking.id, reason="  Changed my mind ")

    assert result.booking.status == BookingStatus.CANCELLED
    assert result.booking.provider_id is None
    assert result.booking.cancellation_reason == "Changed my mind"
    assert result.provider_released is True
    last = get_booking_history(db, booking.id)[-1]
    assert last.changed_by == ChangedBy.CUSTOMER
    assert last.note == "Changed my mind"
    assert reload(db, cleaner).is_available is True


def test_cancel_pending_uses_default_reason(db, providers):
    set_provider_availability(db, providers[ServiceType.PLUMBING].id, False)
    db.commit()
    booking = booking_service.create_booking(db, ServiceType.PLUMBING)

    result = booking_service.cancel_booking(db, booking.id)

    assert result.booking.cancellation_reason == "Cancelled by user"
    assert result.provider_released is False


def test_fail_from_terminal_status_does_not_touch_provider(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    booking = booking_service.create_booking(db, ServiceType.CLEANING)
    booking_service.respond_to_booking(db, booking.id, cleaner.id, accept=True)
    booking_service.complete_booking(db, booking.id)
    other = booking_service.create_booking(db, ServiceType.CLEANING)
    assert other.provider_id == cleaner.id

    result = booking_service.fail_booking(db, booking.id)

    assert result.booking.status == BookingStatus.FAILED
    assert result.booking.failure_reason == "Marked as failed by system"
    assert result.provider_released is False
    assert reload(db, cleaner).is_available is False


def test_fail_in_progress_releases_provider(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    booking = booking_service.create_booking(db, ServiceType.CLEANING)
    booking_service.respond_to_booking(db, booking.id, cleaner.id, accept=True)

    result = booking_service.fail_booking(db, booking.id, reason="No access to site")

    assert result.provider_released is True
    last = get_booking_history(db, booking.id)[-1]
    assert (last.old_status, last.new_status) == (BookingStatus.IN_PROGRESS, BookingStatus.FAILED)
    assert last.changed_by == ChangedBy.SYSTEM
    assert last.note == "No access to site"


def test_complete_requires_in_progress(db, providers):
    booking = booking_service.create_booking(db, ServiceType.CLEANING)

    with pytest.raises(InvalidTransitionError):
        booking_service.complete_booking(db, booking.id)


def test_unknown_booking_is_not_found(db, providers):
    with pytest.raises(NotFoundError) as exc_info:
        booking_service.complete_booking(db, 9999)
    assert exc_info.value.code == ErrorCode.BOOKING_NOT_FOUND


def test_admin_override_completes_assigned_booking(db, providers):
    cleaner = providers[ServiceType.CLEANING]
    booking = booking_service.create_booking(db, ServiceType.CLEANING)
    assert booking.status == BookingStatus.ASSIGNED

    booking = admin_override(db, booking.id, status="COMPLETED", provider_id=None)

    assert booking.status == BookingStatus.COMPLETED
    assert booking.provider_id is None
    assert reload(db, cleaner).is_available is True
    last = get_booking_history(db, booking.id)[-1]
    assert last.changed_by == ChangedBy.ADMIN
    assert last.note == "Admin override"
    assert (last.old_status, last.new_status) == (BookingStatus.ASSIGNED, BookingStatus.COMPLETED)


def test_transition_table_is_closed():
    assert booking_service.is_allowed_transition(BookingStatus.PENDING, BookingStatus.ASSIGNED)
    assert booking_service.is_allowed_transition(BookingStatus.COMPLETED, BookingStatus.FAILED)
    assert not booking_service.is_allowed_transition(BookingStatus.COMPLETED, BookingStatus.PENDING)
    assert not booking_service.is_allowed_transition(BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED)
    with pytest.raises(InvalidTransitionError):
        booking_service.assert_transition(BookingStatus.CANCELLED, BookingStatus.ASSIGNED)
