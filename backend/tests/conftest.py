"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.
"""

import pytest
import pytest_asyncio
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from httpx import AsyncClient, ASGITransport

from partner_access.main import create_app
from partner_access.models.base import Base
from partner_access.db.session import get_session_factory
from partner_access.services.notification_service import (
    InMemoryNotificationChannel,
    NotificationDispatcher,
)
from partner_access.services.plan_catalog import PlanCatalog
from partner_access.services.billing_reconciler import BillingEventReconciler
from partner_access.services.lifecycle import OrganizationLifecycle
from partner_access.api import billing_webhooks as billing_webhooks_module


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """
    Create a test database engine.

    WHY: The services open one session per unit of work, so the database
    must be shared across connections. A file-backed SQLite database per
    test gives that while keeping tests isolated.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/test.db",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Factories commit through this session so the services, which open
    their own sessions, see the data.

    Yields:
        AsyncSession: Database session for the test
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def notification_channel() -> InMemoryNotificationChannel:
    """Channel recording every notification sent."""
    return InMemoryNotificationChannel()


@pytest.fixture
def notifier(notification_channel) -> NotificationDispatcher:
    return NotificationDispatcher(notification_channel)


@pytest.fixture
def plan_catalog(session_factory) -> PlanCatalog:
    return PlanCatalog(session_factory, ttl_seconds=300)


@pytest.fixture
def reconciler(session_factory, plan_catalog, notifier) -> BillingEventReconciler:
    return BillingEventReconciler(session_factory, plan_catalog, notifier)


@pytest.fixture
def lifecycle(session_factory, notifier) -> OrganizationLifecycle:
    return OrganizationLifecycle(session_factory, notifier)


@pytest_asyncio.fixture
async def client(session_factory, reconciler) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient allows testing FastAPI endpoints without running
    a real server.

    Yields:
        AsyncClient: HTTP client for making test requests
    """
    app = create_app()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[billing_webhooks_module.get_billing_reconciler] = lambda: reconciler

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
