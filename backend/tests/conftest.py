"""pytest fixtures for mediagen backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- engine: Function-scoped SQLite database (file in tmp_path) with all tables created
- session_factory / uow_factory: Factories bound to that database
- change_feed: Feed receiving committed job changes
- store / ledger: Services under test
- create_job: Helper inserting a PendingJob directly
"""

import os

os.environ["APP_ENV"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./mediagen-test.db")

from datetime import timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import AsyncGenerator  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import mediagen.models  # noqa: E402,F401
from mediagen.core.timezone import utcnow  # noqa: E402
from mediagen.models.pending_job import JobStatus, JobType, PendingJob, Provider  # noqa: E402
from mediagen.services.credit_ledger import CreditLedger  # noqa: E402
from mediagen.services.job_store import PendingJobStore  # noqa: E402
from mediagen.services.notifications.change_feed import ChangeFeed  # noqa: E402
from mediagen.uow import create_uow_factory  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Provide a fresh SQLite database per test.

    A file database (not :memory:) so that concurrent sessions see one database.
    """
    db_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'mediagen.db'}",
        connect_args={"timeout": 30},
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield db_engine

    await db_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def change_feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def uow_factory(session_factory, change_feed):
    """Provide UnitOfWork factory publishing to the test change feed."""
    return create_uow_factory(session_factory, change_feed)


@pytest.fixture
def store() -> PendingJobStore:
    return PendingJobStore()


@pytest.fixture
def ledger() -> CreditLedger:
    return CreditLedger()


@pytest.fixture
def create_job(uow_factory):
    """Insert a PendingJob and return it.

    Accepts ``age`` (timedelta) to backdate ``created_at`` and any PendingJob field
    as keyword override. ``cost`` is stored in metadata.
    """

    async def _create(
        user_id: str = "user-1",
        task_id: str | None = None,
        provider: Provider = Provider.RUNWARE,
        job_type: JobType = JobType.IMAGE,
        status: JobStatus = JobStatus.PENDING,
        cost: str | None = "0.50",
        age: timedelta = timedelta(0),
        **overrides,
    ) -> PendingJob:
        metadata = dict(overrides.pop("job_metadata", {}))
        if cost is not None:
            metadata["cost"] = cost
        created_at = utcnow() - age
        job = PendingJob(
            user_id=user_id,
            task_id=task_id or f"task-{uuid4()}",
            provider=provider,
            job_type=job_type,
            status=status,
            job_metadata=metadata,
            created_at=created_at,
            updated_at=created_at,
            **overrides,
        )
        async with await uow_factory() as uow:
            await uow.pending_jobs.add(job)
        return job

    return _create


@pytest.fixture
def fund(uow_factory, ledger):
    """Credit a user's balance through the ledger."""

    async def _fund(user_id: str, amount: str) -> Decimal:
        async with await uow_factory() as uow:
            return await ledger.add_credits(uow, user_id, Decimal(amount))

    return _fund
