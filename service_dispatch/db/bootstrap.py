"""Bootstrap helpers for default provider data."""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from service_dispatch.core.enums import ServiceType
from service_dispatch.db.models import Provider
from service_dispatch.db.session import atomic

logger = logging.getLogger(__name__)

SEED_PROVIDERS: tuple[tuple[str, ServiceType], ...] = (
    ("Provider A", ServiceType.CLEANING),
    ("Provider B", ServiceType.PLUMBING),
    ("Provider C", ServiceType.ELECTRICIAN),
)


def ensure_seed_providers(db: Session) -> list[Provider]:
    """Insert any seed provider missing by name. Returns the newly created rows."""
    names = [name for name, _ in SEED_PROVIDERS]
    with atomic(db):
        existing = set(db.scalars(select(Provider.name).where(Provider.name.in_(names))).all())

        created = [
            Provider(name=name, service_type=service_type, is_available=True)
            for name, service_type in SEED_PROVIDERS
            if name not in existing
        ]
        db.add_all(created)

    for provider in created:
        db.refresh(provider)

    if created:
        logger.info("Seeded providers: %s", ", ".join(p.name for p in created))
    return created
