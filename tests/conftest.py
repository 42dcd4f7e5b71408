import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from service_dispatch.core.enums import ServiceType
from service_dispatch.db.bootstrap import ensure_seed_providers
from service_dispatch.db.init_db import init_db
from service_dispatch.db.models import Provider
from service_dispatch.db.session import get_db


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def providers(db) -> dict[ServiceType, Provider]:
    """The three seed providers keyed by service type."""
    return {provider.service_type: provider for provider in ensure_seed_providers(db)}


@pytest.fixture()
def add_provider(db):
    def _add(name: str, service_type: ServiceType, is_available: bool = True) -> Provider:
        provider = Provider(name=name, service_type=service_type, is_available=is_available)
        db.add(provider)
        db.commit()
        db.refresh(provider)
        return provider

    return _add


@pytest.fixture()
def client(session_factory):
    # Imported lazily so the app module is only loaded by HTTP tests.
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    # No context manager: the lifespan (real DB, scheduler) must not run.
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()
