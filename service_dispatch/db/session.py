"""Database engine/session setup for SQLAlchemy."""

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from service_dispatch.core.config import DATABASE_URL
from service_dispatch.core.domain_exceptions import PersistenceError

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # check_same_thread is required for SQLite with FastAPI.
        connect_args["check_same_thread"] = False
    return create_engine(
        database_url,
        connect_args=connect_args,
        pool_pre_ping=True,
    )


# Engine is shared across requests.
engine = build_engine(DATABASE_URL)

# Session factory used by request-scoped dependencies and the scheduler.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, class_=Session)

# Declarative base class for ORM models.
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Provide a DB session per request and ensure it is closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Commit everything written inside the block as one unit, or nothing.

    Store failures are rolled back and surfaced as PersistenceError; any
    other exception is rolled back and re-raised unchanged.
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Transaction rolled back after a database error.")
        raise PersistenceError(f"Database operation failed: {exc.__class__.__name__}") from exc
    except Exception:
        db.rollback()
        raise
