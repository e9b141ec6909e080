"""Unit of Work pattern for the mediagen backend.

Provides transaction management with automatic commit/rollback, access to all
repositories, and post-commit publication of pending job changes.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction, async_sessionmaker

from mediagen.models.pending_job import PendingJob, PendingJobRead
from mediagen.repositories.credits import CreditsRepository
from mediagen.repositories.pending_job import PendingJobRepository
from mediagen.services.notifications.change_feed import ChangeFeed, JobChange, JobChangeKind

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    Manages database transactions and provides access to all repositories.
    Use as async context manager for automatic commit/rollback.

    Job changes recorded with ``record_change`` are published to the change feed
    only after a successful commit, so subscribers never observe rolled-back state.

    Example:
        async with await uow_factory() as uow:
            job = await uow.pending_jobs.get_by_task_id(task_id)
            await uow.credits.ensure_account(job.user_id, now)
            # Automatically commits on successful exit
            # Automatically rolls back on exception
    """

    def __init__(self, session: AsyncSession, change_feed: ChangeFeed | None = None):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
            change_feed: Optional feed receiving committed job changes
        """
        self.session = session
        self.change_feed = change_feed
        self._changes: list[JobChange] = []

        self.pending_jobs = PendingJobRepository(session)
        self.credits = CreditsRepository(session)

    def record_change(self, kind: JobChangeKind, job: PendingJob | PendingJobRead) -> None:
        """Queue a job change for publication after commit."""
        self._changes.append(JobChange(kind=kind, job=PendingJobRead.model_validate(job)))

    def savepoint(self) -> AsyncSessionTransaction:
        """Open a nested transaction; a failure inside rolls back only its own writes.

        Example:
            async with uow.savepoint():
                await uow.credits.add_transaction(transaction)
        """
        return self.session.begin_nested()

    async def __aenter__(self):
        """Enter async context manager.

        Returns:
            self: UnitOfWork instance with all repositories available
        """
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager with automatic commit/rollback.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed", job_changes=len(self._changes))
                self._publish_changes()
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
                self._changes.clear()
        finally:
            await self.session.close()

        return False

    def _publish_changes(self) -> None:
        changes, self._changes = self._changes, []
        if self.change_feed is None:
            return
        for change in changes:
            self.change_feed.publish(change)


def create_uow_factory(
    session_factory: async_sessionmaker[AsyncSession], change_feed: ChangeFeed | None = None
):
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory
        change_feed: Optional feed shared by every UnitOfWork the factory creates

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url, pool_size=20)
        uow_factory = create_uow_factory(session_factory, ChangeFeed())

        async with await uow_factory() as uow:
            await uow.pending_jobs.add(job)
    """

    async def _create_uow():
        """Create a new UnitOfWork instance with a new session."""
        session = session_factory()
        return UnitOfWork(session, change_feed)

    return _create_uow
