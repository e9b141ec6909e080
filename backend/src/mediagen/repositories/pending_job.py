"""PendingJob repository.

Provides data access methods for PendingJob entities. Status changes are issued as
conditional UPDATEs so that concurrent webhook deliveries for the same task race on
the database row rather than on in-memory state.
"""

from datetime import datetime
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mediagen.models.pending_job import (
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    JobStatus,
    JobType,
    PendingJob,
)


class PendingJobRepository:
    """Repository for PendingJob entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: PendingJob) -> PendingJob:
        """Persist new pending job to database.

        Args:
            job: PendingJob entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> PendingJob | None:
        result = await self.session.execute(select(PendingJob).where(PendingJob.id == job_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_task_id(
        self, task_id: str, for_update: bool = False, refresh: bool = False
    ) -> PendingJob | None:
        """Retrieve job by provider task identifier.

        Args:
            task_id: Provider-issued task identifier (unique)
            for_update: Lock the row until the transaction ends (PostgreSQL only;
                other dialects ignore the clause)
            refresh: Overwrite any copy already loaded in the session identity map

        Returns:
            PendingJob if found, None otherwise
        """
        stmt = select(PendingJob).where(PendingJob.task_id == task_id)  # type: ignore[arg-type]
        if for_update:
            stmt = stmt.with_for_update()
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_for_user(self, user_id: str, task_id: str) -> PendingJob | None:
        """Retrieve a job only if it belongs to ``user_id`` (client-facing path)."""
        result = await self.session.execute(
            select(PendingJob).where(
                PendingJob.task_id == task_id,  # type: ignore[arg-type]
                PendingJob.user_id == user_id,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: str,
        statuses: Iterable[JobStatus] | None = None,
        limit: int = 100,
    ) -> list[PendingJob]:
        """Retrieve a user's jobs, newest first.

        Args:
            user_id: Owning user
            statuses: Optional status filter (all statuses when None)
            limit: Maximum number of jobs to return

        Returns:
            List of jobs ordered by creation time (newest first)
        """
        stmt = select(PendingJob).where(PendingJob.user_id == user_id)  # type: ignore[arg-type]
        if statuses is not None:
            stmt = stmt.where(PendingJob.status.in_(list(statuses)))  # type: ignore[attr-defined]
        stmt = stmt.order_by(PendingJob.created_at.desc()).limit(limit)  # type: ignore[attr-defined]
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_non_terminal_for_user(self, user_id: str) -> list[PendingJob]:
        return await self.list_for_user(user_id, NON_TERMINAL_STATUSES, limit=1000)

    async def update_if_status(
        self, job_id: UUID, expected: Sequence[JobStatus], values: dict[str, Any]
    ) -> bool:
        """Apply ``values`` only if the job is still in one of the ``expected`` statuses.

        This is the compare-and-set primitive behind every status transition.

        Args:
            job_id: Job's unique identifier
            expected: Statuses the row must currently have
            values: Column values to write

        Returns:
            True if the row was updated, False if its status had already moved on
        """
        result = await self.session.execute(
            update(PendingJob)
            .where(
                PendingJob.id == job_id,  # type: ignore[arg-type]
                PendingJob.status.in_(list(expected)),  # type: ignore[attr-defined]
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def mark_notification_sent(self, job_id: UUID, now: datetime) -> bool:
        """Set notification_sent once; returns False if another writer got there first."""
        result = await self.session.execute(
            update(PendingJob)
            .where(
                PendingJob.id == job_id,  # type: ignore[arg-type]
                PendingJob.notification_sent.is_(False),  # type: ignore[attr-defined]
            )
            .values(notification_sent=True, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def clear_notification_sent(self, job_id: UUID, now: datetime) -> None:
        """Release a notification claim whose push was not delivered."""
        await self.session.execute(
            update(PendingJob)
            .where(PendingJob.id == job_id)  # type: ignore[arg-type]
            .values(notification_sent=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()

    async def mark_cancelled(self, job_id: UUID, now: datetime) -> bool:
        """Record user cancellation on a non-terminal job (status is left untouched)."""
        result = await self.session.execute(
            update(PendingJob)
            .where(
                PendingJob.id == job_id,  # type: ignore[arg-type]
                PendingJob.status.in_(list(NON_TERMINAL_STATUSES)),  # type: ignore[attr-defined]
                PendingJob.cancelled_at.is_(None),  # type: ignore[union-attr]
            )
            .values(cancelled_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_terminal_completed_before(self, cutoff: datetime) -> list[PendingJob]:
        """Retrieve terminal jobs whose completion predates ``cutoff``."""
        result = await self.session.execute(
            select(PendingJob).where(
                PendingJob.status.in_(list(TERMINAL_STATUSES)),  # type: ignore[attr-defined]
                PendingJob.completed_at.is_not(None),  # type: ignore[union-attr]
                PendingJob.completed_at < cutoff,  # type: ignore[operator]
            )
        )
        return list(result.scalars().all())

    async def list_stale(
        self, job_type: JobType, created_before: datetime, user_id: str | None = None
    ) -> list[PendingJob]:
        """Retrieve non-terminal jobs of ``job_type`` created before ``created_before``."""
        stmt = select(PendingJob).where(
            PendingJob.job_type == job_type,  # type: ignore[arg-type]
            PendingJob.status.in_(list(NON_TERMINAL_STATUSES)),  # type: ignore[attr-defined]
            PendingJob.created_at < created_before,  # type: ignore[arg-type]
        )
        if user_id is not None:
            stmt = stmt.where(PendingJob.user_id == user_id)  # type: ignore[arg-type]
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_orphans(self, user_id: str, created_before: datetime) -> list[PendingJob]:
        """Retrieve a user's jobs still ``pending`` since before ``created_before``."""
        result = await self.session.execute(
            select(PendingJob).where(
                PendingJob.user_id == user_id,  # type: ignore[arg-type]
                PendingJob.status == JobStatus.PENDING,  # type: ignore[arg-type]
                PendingJob.created_at < created_before,  # type: ignore[arg-type]
            )
        )
        return list(result.scalars().all())

    async def delete_by_ids(self, job_ids: Sequence[UUID]) -> int:
        """Delete jobs by UUID.

        Returns:
            Number of deleted rows
        """
        if not job_ids:
            return 0
        result = await self.session.execute(
            delete(PendingJob)
            .where(PendingJob.id.in_(list(job_ids)))  # type: ignore[attr-defined]
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]
