"""Pytest configuration for ordersync tests

WHAT: Provides shared fixtures for service, repository and HTTP endpoint tests
WHY: Ensures consistent test setup, database isolation, and fake upstream wiring
REFERENCES:
    - ordersync/main.py: FastAPI application
    - ordersync/database.py: Database configuration
    - ordersync/deps.py: Dependency injection
    - ordersync/tests/helpers.py: Fake Shopify client, fake task queue, order builders
"""

import os
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment (before any ordersync import reads it)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("TASK_QUEUE_BACKEND", "inprocess")
os.environ.setdefault("SHOPIFY_SHOP", "test-shop")
os.environ.setdefault("SHOPIFY_ACCESS_TOKEN", "shpat_test")
os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from ordersync.tests.helpers import FakeShopifyClient, FakeTaskQueue  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine shared by every session."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from ordersync.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    """Create test database session."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def fake_client():
    return FakeShopifyClient()


@pytest.fixture
def fake_queue():
    return FakeTaskQueue()


@pytest.fixture
def state_store():
    from ordersync.services.sync_state_store import SyncStateStore, TTLCache

    return SyncStateStore(TTLCache(ttl_seconds=60))


@pytest.fixture
def sync_service(fake_client, fake_queue, state_store):
    from ordersync.services.order_repository import OrderRepository
    from ordersync.services.order_sync_service import OrderSyncService

    return OrderSyncService(
        client=fake_client,
        state_store=state_store,
        task_queue=fake_queue,
        bulk_threshold=100,
        batch_size=1000,
        repository_factory=lambda db: OrderRepository(db, retry_delay_seconds=0),
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, sync_service):
    """Create FastAPI test application with fake upstream."""
    from ordersync.main import create_app
    from ordersync.database import get_db
    from ordersync.deps import get_order_sync_service, get_order_sync_service_factory

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_order_sync_service] = lambda: sync_service
    test_app.dependency_overrides[get_order_sync_service_factory] = lambda: (lambda: sync_service)

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)
