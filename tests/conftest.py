"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks Redis and every outbound service.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from fixmo.database import Base
from fixmo.models import Appointment, Customer, ServiceListing, ServiceProvider
from fixmo.services.actors import Actor, ADMIN, CUSTOMER, PROVIDER

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis: prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.ping = AsyncMock(return_value=True)
    redis_mock.eval = AsyncMock(return_value=1)
    redis_mock.publish = AsyncMock(return_value=1)
    with (
        patch("fixmo.utils.redis_client.get_redis", new_callable=AsyncMock, return_value=redis_mock),
        patch("fixmo.services.event_bus.get_redis", new_callable=AsyncMock, return_value=redis_mock),
    ):
        yield redis_mock


def session_factory_from(db):
    """Wrap the test session so workers using async_session_factory() get it back."""
    @asynccontextmanager
    async def _factory():
        yield db
    return _factory


@pytest.fixture
async def seed(db):
    """One customer, one provider, and a 7-day-warranty service listing."""
    customer = Customer(first_name="Ana", last_name="Reyes", email="ana@example.com")
    provider = ServiceProvider(first_name="Ben", last_name="Cruz", email="ben@example.com")
    db.add_all([customer, provider])
    await db.flush()
    service = ServiceListing(provider_id=provider.id, title="Sink Repair", starting_price=500.0, warranty=7)
    db.add(service)
    await db.commit()
    return SimpleNamespace(
        customer=customer,
        provider=provider,
        service=service,
        as_customer=Actor(customer.id, CUSTOMER),
        as_provider=Actor(provider.id, PROVIDER),
        as_admin=Actor(uuid.uuid4(), ADMIN),
    )


async def add_appointment(db, seed, status="scheduled", scheduled_date=None, **fields) -> Appointment:
    """Insert an appointment for the seeded pair with arbitrary state."""
    appointment = Appointment(
        customer_id=seed.customer.id,
        provider_id=seed.provider.id,
        service_id=seed.service.id,
        scheduled_date=scheduled_date or T0 - timedelta(days=1),
        status=status,
        warranty_days=fields.pop("warranty_days", seed.service.warranty),
        **fields,
    )
    db.add(appointment)
    await db.commit()
    return appointment
