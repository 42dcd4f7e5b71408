"""Database initialization utilities."""

import logging

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from service_dispatch.db import models  # noqa: F401 - ensure model metadata is registered
from service_dispatch.db.session import Base, engine as default_engine

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("providers", "bookings", "booking_events")


def _missing_tables(bind: Engine) -> list[str]:
    existing = set(inspect(bind).get_table_names())
    return [name for name in REQUIRED_TABLES if name not in existing]


def init_db(bind: Engine | None = None) -> None:
    """Create any missing tables and indexes; existing data is left untouched."""
    bind = bind or default_engine
    try:
        missing = _missing_tables(bind)
        Base.metadata.create_all(bind=bind)
        if missing:
            logger.info("Created tables: %s", ", ".join(missing))
    except SQLAlchemyError:
        logger.exception("Database initialization failed.")
        raise
