"""Shared pytest fixtures for testing."""

import os
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

# Set test environment before relay reads its settings
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.pop("SENTRY_DSN", None)

from relay.constants import SubscriptionTier  # noqa: E402
from relay.models import Account, Base, Endpoint  # noqa: E402
from relay.queue import DeliveryJob, DeliveryQueue  # noqa: E402
from relay.services.jwt_service import JWTService  # noqa: E402


class RecordingQueue(DeliveryQueue):
    """DeliveryQueue double that keeps every enqueued job in order."""

    def __init__(self):
        self.jobs: list[tuple[DeliveryJob, int]] = []
        self.fail = False
        self.closed = False

    async def enqueue(self, job: DeliveryJob, delay_ms: int = 0) -> str:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.jobs.append((job, delay_ms))
        return job.job_id

    async def close(self) -> None:
        self.closed = True

    def pop(self) -> DeliveryJob:
        job, _ = self.jobs.pop(0)
        return job

    @property
    def delays(self) -> list[int]:
        return [delay for _, delay in self.jobs]


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """File-backed SQLite per test so separate sessions can write concurrently."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


# =============================================================================
# Test Data Fixtures
# =============================================================================


@pytest.fixture
def make_account(session_factory):
    """Factory for persisted accounts."""

    async def _make(tier: SubscriptionTier = SubscriptionTier.FREE, usage: int = 0, **fields) -> Account:
        account = Account.create(email=f"{uuid4().hex[:10]}@example.com", name="Test Account", tier=tier)
        account.webhook_usage = usage
        for name, value in fields.items():
            setattr(account, name, value)
        async with session_factory() as db:
            db.add(account)
            await db.commit()
        return account

    return _make


@pytest.fixture
def make_endpoint(session_factory):
    """Factory for persisted endpoints. The returned instance carries its secret."""

    async def _make(account: Account, is_active: bool = True, **fields) -> Endpoint:
        fields.setdefault("name", "Orders")
        fields.setdefault("destination_url", "https://hooks.example.com/orders")
        endpoint = Endpoint.create(account_id=account.id, **fields)
        endpoint.is_active = is_active
        async with session_factory() as db:
            db.add(endpoint)
            await db.commit()
        return endpoint

    return _make


# =============================================================================
# API Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(session_factory, queue) -> AsyncGenerator[AsyncClient, None]:
    """Test HTTP client with database and queue overridden."""
    from relay.database import get_db
    from relay.dependencies.services import get_queue, get_rate_limiter
    from relay.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_queue] = lambda: queue
    app.dependency_overrides[get_rate_limiter] = lambda: None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Bearer headers for an account."""

    def _headers(account: Account) -> dict[str, str]:
        token = JWTService().create_token(account.id, account.email)
        return {"Authorization": f"Bearer {token}"}

    return _headers
