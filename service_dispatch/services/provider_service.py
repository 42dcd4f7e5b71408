import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from service_dispatch.core.domain_exceptions import NotFoundError, PersistenceError, ValidationError
from service_dispatch.core.enums import parse_booking_status, parse_service_type
from service_dispatch.core.error_codes import ErrorCode
from service_dispatch.db.models import Booking, Provider
from service_dispatch.db.session import atomic
from service_dispatch.services.booking_service import LIST_LIMIT

logger = logging.getLogger(__name__)


def list_providers(db: Session, service_type: str | None = None) -> list[Provider]:
    query = select(Provider)
    if service_type is not None:
        query = query.where(Provider.service_type == parse_service_type(service_type))
    return list(db.scalars(query.order_by(Provider.created_at.asc(), Provider.id.asc())).all())


def get_provider(db: Session, provider_id: int) -> Provider:
    provider = db.get(Provider, provider_id)
    if provider is None:
        raise NotFoundError("Provider not found.", code=ErrorCode.PROVIDER_NOT_FOUND)
    return provider


def create_provider(db: Session, name: str, service_type: str) -> Provider:
    """Register a new, available provider. Names are unique."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Provider name is required.")
    service_type = parse_service_type(service_type)

    if db.scalar(select(Provider.id).where(Provider.name == name)) is not None:
        raise ValidationError(
            f"Provider '{name}' already exists.",
            code=ErrorCode.DUPLICATE_PROVIDER,
        )

    try:
        with atomic(db):
            provider = Provider(name=name, service_type=service_type, is_available=True)
            db.add(provider)
    except PersistenceError as exc:
        if isinstance(exc.__cause__, IntegrityError):
            raise ValidationError(
                f"Provider '{name}' already exists.",
                code=ErrorCode.DUPLICATE_PROVIDER,
            ) from exc
        raise

    db.refresh(provider)
    logger.info("Provider %s created (%s).", provider.id, service_type.value)
    return provider


def list_provider_bookings(
    db: Session,
    provider_id: int,
    status: str | None = None,
    limit: int = LIST_LIMIT,
) -> list[Booking]:
    """Bookings referencing a provider, newest first."""
    get_provider(db, provider_id)

    query = select(Booking).where(Booking.provider_id == provider_id)
    if status is not None:
        query = query.where(Booking.status == parse_booking_status(status))

    limit = max(1, min(limit, LIST_LIMIT))
    return list(
        db.scalars(
            query.order_by(Booking.created_at.desc(), Booking.id.desc()).limit(limit)
        ).all()
    )
