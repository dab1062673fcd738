"""
Test configuration and fixtures
"""
import asyncio
import os
import uuid
from typing import AsyncGenerator, Callable, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key-for-jwt-signing-0123456789"
os.environ["SERVICE_AUTH_TOKEN"] = "test-service-token"
os.environ["CREDENTIALS_ENCRYPTION_KEY"] = "YWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWFhYWE="
# SQLite gives the UUID column NUMERIC affinity, so an all-digit hex id would be read back as an integer
os.environ["DEFAULT_ORGANIZATION_ID"] = "d3fa0170-0000-4000-8000-00000000000d"

from maes.api.auth import create_access_token
from maes.core.errors import ExecutorUnavailableError
from maes.db.database import Base, get_db
from maes.db.models import Job, Organization
from maes.main import app
from maes.services import credential_vault
from maes.services.dispatcher import JobDispatcher, get_dispatcher
from maes.services.lifecycle import LifecycleManager, get_lifecycle_manager


# Test database setup
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
SERVICE_HEADERS = {"x-service-token": "test-service-token"}

VALID_CREDENTIALS = {
    "applicationId": "11111111-2222-3333-4444-555555555555",
    "clientSecret": "s3cr3t-value",
}


# === Fakes for external collaborators ===

class FakeExecutor:
    """Stands in for the broker hand-off; records what was dispatched and stopped"""

    def __init__(self):
        self.dispatched: list[uuid.UUID] = []
        self.contexts: list[dict] = []
        self.stopped: list[uuid.UUID] = []
        self.unavailable = False

    async def dispatch(self, job: Job, context: Optional[dict] = None) -> None:
        if self.unavailable:
            raise ExecutorUnavailableError("broker down", {"job_id": str(job.id)})
        self.dispatched.append(job.id)
        self.contexts.append(context or {})

    async def request_stop(self, job_id: uuid.UUID) -> None:
        self.stopped.append(job_id)


class FakeCache:
    def __init__(self):
        self.purged: list[uuid.UUID] = []
        self.error: Optional[Exception] = None

    async def purge(self, organization_id: uuid.UUID) -> int:
        if self.error is not None:
            raise self.error
        self.purged.append(organization_id)
        return 3

    async def close(self) -> None:
        pass


class FakeService:
    """Cooperating service with a switchable failure mode"""

    def __init__(self, name: str):
        self.name = name
        self.calls: list[uuid.UUID] = []
        self.fail = False
        self.delay = 0.0

    async def delete_organization_data(self, organization_id: uuid.UUID) -> dict:
        self.calls.append(organization_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ExecutorUnavailableError(f"{self.name} returned HTTP 503", {"service": self.name})
        return {"deleted": 1}


class FakeScheduler:
    def __init__(self):
        self.scheduled: list[tuple] = []
        self.revoked: list[uuid.UUID] = []

    def schedule(self, job_id: uuid.UUID, eta=None) -> None:
        self.scheduled.append((job_id, eta))

    def revoke(self, job_id: uuid.UUID) -> None:
        self.revoked.append(job_id)


# === Database ===

@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async engine for tests"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async_session = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


# === Services wired to fakes ===

@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def fake_cache() -> FakeCache:
    return FakeCache()


@pytest.fixture
def fake_services() -> list[FakeService]:
    return [FakeService("extractor"), FakeService("analyzer")]


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def dispatcher(fake_executor: FakeExecutor) -> JobDispatcher:
    return JobDispatcher(executor=fake_executor, concurrency_limit=3)


@pytest.fixture
def lifecycle(dispatcher, fake_cache, fake_services, fake_scheduler) -> LifecycleManager:
    return LifecycleManager(
        dispatcher=dispatcher,
        cache=fake_cache,
        services=fake_services,
        scheduler=fake_scheduler,
        step_timeout=2,
    )


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    dispatcher: JobDispatcher,
    lifecycle: LifecycleManager,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with database session and service overrides"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_lifecycle_manager] = lambda: lifecycle

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[..., dict]:
    """Build a bearer header for a user scoped to an organization"""

    def _headers(organization_id: uuid.UUID, role: str = "analyst", user_id: str = "user-1") -> dict:
        token = create_access_token(user_id, organization_id, role)
        return {"Authorization": f"Bearer {token}"}

    return _headers


# === Sample Data Fixtures ===

@pytest_asyncio.fixture
async def default_organization(lifecycle: LifecycleManager, db_session: AsyncSession) -> Organization:
    return await lifecycle.ensure_default_organization(db_session)


@pytest_asyncio.fixture
async def bare_organization(lifecycle: LifecycleManager, db_session: AsyncSession) -> Organization:
    """Active organization without credentials"""
    return await lifecycle.register(db_session, "Contoso", domain="contoso.com", tenant_id="tenant-contoso")


@pytest_asyncio.fixture
async def organization(bare_organization: Organization, db_session: AsyncSession) -> Organization:
    """Active organization with a usable credential bundle"""
    await credential_vault.store(db_session, bare_organization.id, VALID_CREDENTIALS)
    await db_session.refresh(bare_organization)
    return bare_organization


@pytest_asyncio.fixture
async def other_organization(lifecycle: LifecycleManager, db_session: AsyncSession) -> Organization:
    org = await lifecycle.register(db_session, "Fabrikam", domain="fabrikam.com")
    await credential_vault.store(db_session, org.id, VALID_CREDENTIALS)
    await db_session.refresh(org)
    return org


EXTRACTION_PARAMS = {"extraction_type": "unified_audit_log"}


@pytest.fixture
def make_job(db_session: AsyncSession, dispatcher: JobDispatcher):
    """Create a job and run it through admission like the API does"""
    from maes.db.models import JobPriority, JobType
    from maes.services import job_store

    async def _make(
        organization_id: uuid.UUID,
        job_type: JobType = JobType.EXTRACTION,
        parameters: Optional[dict] = None,
        priority: JobPriority = JobPriority.MEDIUM,
        admit: bool = True,
    ) -> Job:
        if parameters is None and job_type == JobType.EXTRACTION:
            parameters = dict(EXTRACTION_PARAMS)
        job = await job_store.create_job(db_session, organization_id, job_type, parameters, priority=priority)
        if admit:
            job = await dispatcher.enqueue(db_session, job)
        return job

    return _make


@pytest.fixture
def service_headers() -> dict:
    return dict(SERVICE_HEADERS)
