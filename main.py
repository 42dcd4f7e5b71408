"""FastAPI entrypoint for the Service Dispatch backend.

- `service_dispatch/routes/` for the bookings, providers and admin APIs
- `service_dispatch/services/` for the booking state machine and assignment engine
- `service_dispatch/db/` for SQLAlchemy models and session management
- `service_dispatch/scheduler/` for the APScheduler reconciliation job
"""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from service_dispatch.core.config import LOG_LEVEL, SEED_PROVIDERS_ON_STARTUP
from service_dispatch.core.domain_exceptions import DomainException
from service_dispatch.core.exceptions import (
    domain_exception_handler,
    http_exception_handler,
    request_validation_handler,
)
from service_dispatch.core.middleware import RequestContextMiddleware
from service_dispatch.db.bootstrap import ensure_seed_providers
from service_dispatch.db.init_db import init_db
from service_dispatch.db.session import SessionLocal
from service_dispatch.routes import admin, bookings, providers
from service_dispatch.scheduler.reconcile_scheduler import start_scheduler

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Initialize app resources before serving traffic."""
    # Ensure SQL tables exist at app startup.
    init_db()
    logger.info("Database tables initialized.")

    if SEED_PROVIDERS_ON_STARTUP:
        db = SessionLocal()
        try:
            ensure_seed_providers(db)
        finally:
            db.close()

    # Start the background reconcile scheduler (non-blocking).
    try:
        scheduler = start_scheduler()
    except Exception:
        logger.exception("Failed to start scheduler.")
        scheduler = None

    yield

    # Graceful shutdown.
    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Reconcile scheduler shut down.")


app = FastAPI(
    title="Service Dispatch API",
    version="0.1.0",
    description="Booking lifecycle and provider assignment backend.",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

app.add_exception_handler(DomainException, domain_exception_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)

app.include_router(bookings.router)
app.include_router(providers.router)
app.include_router(admin.router)


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    """Simple status endpoint for uptime checks."""
    return {"status": "ok"}
