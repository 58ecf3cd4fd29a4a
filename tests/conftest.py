import os
import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Ensure project root is on sys.path so `import taxsync` and `tests.fixtures` work.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Force test settings before any app imports
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "test-secret")
os.environ.setdefault("APP_BASE_URL", "https://app.example.com")

from taxsync.db import base as db_base  # noqa: E402
from taxsync.db.base import Base, build_engine  # noqa: E402
from taxsync.db.models import Integration  # noqa: E402
from taxsync.ingestion.config import BackfillConfig, ReconcilerConfig, RetryConfig  # noqa: E402
from tests.fixtures.sample_orders import SHOP  # noqa: E402

WEBHOOK_SECRET = "test-secret"
CANONICAL_BASE_URL = "https://app.example.com"


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """A fresh SQLite database file per test, with all tables created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine, monkeypatch):
    """
    Session factory bound to the test database.

    Also patched in as the application's default, so UnitOfWork() and
    get_db use the test database.
    """
    factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr(db_base, "AsyncSessionLocal", factory)
    return factory


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Get a database session for a test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


async def create_integration(
    session_factory,
    integration_id: str = "int_1",
    shop_domain: str = SHOP,
    access_token: str | None = "shpat_test_token",
    **fields,
) -> Integration:
    async with session_factory() as session:
        credentials = {"shop": shop_domain}
        if access_token:
            credentials["access_token"] = access_token
        integration = Integration(
            id=integration_id,
            organization_id="org_1",
            shop_domain=shop_domain,
            credentials=credentials,
            **fields,
        )
        session.add(integration)
        await session.commit()
        return integration


@pytest_asyncio.fixture
async def integration(session_factory) -> Integration:
    """A connected integration for the sample shop."""
    return await create_integration(session_factory)


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry schedule with zero waits."""
    return RetryConfig(max_retries=3, initial_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def backfill_config(fast_retry) -> BackfillConfig:
    return BackfillConfig(batch_size=2, max_orders=100, batch_delay=0.0, retry=fast_retry)


@pytest.fixture
def reconciler_config() -> ReconcilerConfig:
    return ReconcilerConfig(base_url=CANONICAL_BASE_URL)


@pytest.fixture
def canonical_url(reconciler_config) -> str:
    return reconciler_config.canonical_url
