"""Periodic repair pass for provider availability and stranded PENDING bookings."""

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from service_dispatch.db.session import atomic
from service_dispatch.services.assignment_service import assign_waiting_bookings
from service_dispatch.services.availability_service import reconcile_provider_availability

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    corrected_provider_ids: list[int] = field(default_factory=list)
    assigned_booking_ids: list[int] = field(default_factory=list)


def run_reconciliation(db: Session) -> ReconciliationReport:
    """Recompute every availability flag, then hand waiting bookings to idle providers."""
    with atomic(db):
        corrected = reconcile_provider_availability(db)
        assigned = assign_waiting_bookings(db)
        report = ReconciliationReport(
            corrected_provider_ids=corrected,
            assigned_booking_ids=[booking.id for booking in assigned],
        )

    logger.info(
        "Reconciliation finished: %d availability flag(s) corrected, %d booking(s) assigned.",
        len(report.corrected_provider_ids),
        len(report.assigned_booking_ids),
    )
    return report
