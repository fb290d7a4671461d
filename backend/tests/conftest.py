"""Shared test configuration and fixtures.

Every test gets its own SQLite database file (aiosqlite), so sessions can
commit for real and the webhook endpoint's own session sees the same data.
Razorpay is never called: tests patch ``subscription_billing.billing.razorpay_client``.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from subscription_billing.billing import plans
from subscription_billing.billing.access import AccessBypassPolicy
from subscription_billing.billing.dependencies import get_bypass_policy
from subscription_billing.config import settings
from subscription_billing.database import Base, get_db
from subscription_billing.main import app
from factories import KEY_SECRET, WEBHOOK_SECRET

# ---------------------------------------------------------------------------
# Settings: deterministic Razorpay configuration for every test
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def billing_settings(monkeypatch):
    """Configure Razorpay keys and secrets; individual tests override as needed."""
    monkeypatch.setattr(settings, "environment", "development")
    monkeypatch.setattr(settings, "razorpay_key_id", "rzp_test_key_id")
    monkeypatch.setattr(settings, "razorpay_key_secret", KEY_SECRET)
    monkeypatch.setattr(settings, "razorpay_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "razorpay_plan_id", "plan_test_monthly")
    monkeypatch.setattr(settings, "free_access_ids", [])
    monkeypatch.setattr(settings, "free_access_emails", [])
    monkeypatch.setattr(settings, "disable_free_access", False)
    monkeypatch.setattr(plans, "_created_plan_id", None)
    return settings


# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Fresh SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine, monkeypatch) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test DB, also used by code that opens its own sessions."""
    factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr("subscription_billing.api.v1.webhooks.async_session_factory", factory)
    monkeypatch.setattr("subscription_billing.services.reconciliation_service.async_session_factory", factory)
    return factory


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for test setup and direct service calls. Commit before hitting the API."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def bypass_policy() -> AccessBypassPolicy:
    """No free access unless a test asks for it."""
    return AccessBypassPolicy([])


@pytest_asyncio.fixture
async def client(session_factory, bypass_policy) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_bypass_policy] = lambda: bypass_policy

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


