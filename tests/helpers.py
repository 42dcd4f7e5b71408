from sqlalchemy import select
from sqlalchemy.orm import Session

from service_dispatch.core.enums import ACTIVE_STATUSES
from service_dispatch.db.models import Booking, Provider


def reload(db: Session, obj):
    db.expire_all()
    return db.get(type(obj), obj.id)


def assert_availability_consistent(db: Session) -> None:
    """is_available is False exactly for providers holding an active booking."""
    db.expire_all()
    busy = set(
        db.scalars(
            select(Booking.provider_id)
            .where(Booking.provider_id.is_not(None))
            .where(Booking.status.in_(ACTIVE_STATUSES))
        ).all()
    )
    for provider in db.scalars(select(Provider)).all():
        assert provider.is_available == (provider.id not in busy), provider.name
