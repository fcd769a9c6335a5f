"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test (so concurrent sessions see each
other's commits). Mocks Redis and every external service.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import uuid
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import NullPool

import apex.models  # noqa: F401  (registers every table on Base.metadata)
from apex.config import Settings
from apex.database import Base, Database
from apex.models.campaign import Campaign
from apex.models.lead import Lead
from apex.models.organization import Organization


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# SQLite gives a column declared UUID numeric affinity, which mangles all-digit hex ids
@compiles(UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


ORGANIZATION_ID = uuid.UUID("aaaaaaaa-1111-4111-8111-111111111111")


def make_settings(**overrides) -> Settings:
    """Real Settings object with test defaults."""
    values = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "app_env": "test",
        "idempotency_wait_seconds": 2.0,
        "idempotency_poll_interval_seconds": 0.01,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
async def database(tmp_path):
    """Fresh SQLite database with all tables."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'apex.db'}", poolclass=NullPool)
    async with database.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield database
    await database.dispose()


@pytest.fixture
async def db(database):
    """A session on the test database."""
    async with database.session() as session:
        yield session


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.ping = AsyncMock(return_value=True)
    getter = AsyncMock(return_value=redis_mock)
    with (
        patch("apex.utils.alerting.get_redis", getter),
        patch("apex.workers.idempotency_sweeper.get_redis", getter),
        patch("apex.api.health.get_redis", getter),
    ):
        yield redis_mock


@pytest.fixture
async def organization(db):
    org = Organization(
        id=ORGANIZATION_ID,
        name="Acme Solar",
        owner_id="user_123",
        vapi_private_key_encrypted="vapi-private-key",
        stripe_customer_id="cus_acme",
        settings={},
    )
    db.add(org)
    await db.commit()
    return org


@pytest.fixture
async def campaign(db, organization):
    campaign = Campaign(
        organization_id=organization.id,
        name="October outreach",
        status="active",
        assistant_id="asst_123",
        phone_number_id="pn_123",
        settings={"workingHoursEnabled": False, "maxConcurrentCalls": 5},
    )
    db.add(campaign)
    await db.commit()
    return campaign


@pytest.fixture
async def lead(db, campaign):
    lead = Lead(
        organization_id=campaign.organization_id,
        campaign_id=campaign.id,
        name="Jane Doe",
        phone="+15125550123",
        email="jane@example.com",
        status="calling",
        call_attempts=1,
    )
    db.add(lead)
    await db.commit()
    return lead


@pytest.fixture
def app(database):
    from apex.main import create_app
    return create_app(database=database)


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
