"""Unit of Work pattern for managing database transactions."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxsync.db import base as db_base
from taxsync.db.models import ImportJob, Integration, TransactionRecord, WebhookSubscription
from taxsync.db.repositories import (
    ImportJobRepository,
    IntegrationRepository,
    TransactionRepository,
    WebhookSubscriptionRepository,
)


class UnitOfWork:
    """
    Unit of Work pattern implementation for managing database transactions.

    All repositories share one session. When the unit owns its session it
    commits on a clean exit; a borrowed session is left for the caller to
    commit.

    Usage:
        async with UnitOfWork() as uow:
            integration = await uow.integrations.get_by_shop_domain(shop)
            record, created = await uow.transactions.upsert_if_newer(values)
            await uow.commit()
    """

    def __init__(
        self,
        session: Optional[AsyncSession] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        """
        Initialize Unit of Work.

        Args:
            session: Optional existing session (request scope or tests)
            session_factory: Factory for an owned session; defaults to the
                application's AsyncSessionLocal
        """
        self._session = session
        self._session_factory = session_factory
        self._owned_session = session is None

        # Repositories (initialized in __aenter__)
        self.transactions: TransactionRepository = None  # type: ignore
        self.integrations: IntegrationRepository = None  # type: ignore
        self.import_jobs: ImportJobRepository = None  # type: ignore
        self.subscriptions: WebhookSubscriptionRepository = None  # type: ignore

    @property
    def session(self) -> AsyncSession:
        assert self._session is not None, "UnitOfWork used outside its context"
        return self._session

    async def __aenter__(self) -> "UnitOfWork":
        if self._owned_session:
            factory = self._session_factory or db_base.AsyncSessionLocal
            self._session = factory()

        session = self.session
        self.transactions = TransactionRepository(TransactionRecord, session)
        self.integrations = IntegrationRepository(Integration, session)
        self.import_jobs = ImportJobRepository(ImportJob, session)
        self.subscriptions = WebhookSubscriptionRepository(WebhookSubscription, session)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            await self.rollback()
        elif self._owned_session:
            await self.commit()

        if self._owned_session and self._session:
            await self._session.close()

    async def commit(self):
        """Commit the current transaction."""
        if self._session:
            await self._session.commit()

    async def rollback(self):
        """Rollback the current transaction."""
        if self._session:
            await self._session.rollback()

    async def flush(self):
        """Flush pending changes to the database without committing."""
        if self._session:
            await self._session.flush()
