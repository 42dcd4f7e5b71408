"""Background availability reconciliation.

Uses APScheduler BackgroundScheduler to run run_reconciliation on a fixed
interval, each run in its own session.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from service_dispatch.core.config import RECONCILE_INTERVAL_MINUTES
from service_dispatch.db.session import SessionLocal
from service_dispatch.services.reconciliation_service import run_reconciliation

logger = logging.getLogger(__name__)


def _reconcile_job() -> None:
    db = SessionLocal()
    try:
        report = run_reconciliation(db)
        if report.corrected_provider_ids or report.assigned_booking_ids:
            logger.info(
                "Reconcile job: corrected providers %s, assigned bookings %s.",
                report.corrected_provider_ids,
                report.assigned_booking_ids,
            )
    except Exception:
        logger.exception("Unhandled error in reconcile job.")
    finally:
        db.close()


def start_scheduler(interval_minutes: int = RECONCILE_INTERVAL_MINUTES) -> BackgroundScheduler | None:
    """Create, configure, and start the reconciliation scheduler.

    Returns None when the interval is 0 (disabled); otherwise the running
    scheduler so the caller can shut it down.
    """
    if not interval_minutes or interval_minutes <= 0:
        logger.info("Reconcile scheduler disabled.")
        return None

    scheduler = BackgroundScheduler(daemon=True)

    scheduler.add_job(
        _reconcile_job,
        trigger="interval",
        minutes=interval_minutes,
        id="provider_availability_reconcile",
        name="Reconcile provider availability and waiting bookings",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info("Reconcile scheduler started (every %d minute(s)).", interval_minutes)
    return scheduler
