"""Pending job store.

Owns every write to the pending_jobs table: creation at submission time, status
transitions driven by webhooks and polling, user cancellation, notification
bookkeeping and the retention/timeout sweeps. Each write records a change on the
UnitOfWork so the change feed sees it after commit.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError

from mediagen.core.timezone import utcnow
from mediagen.models.pending_job import (
    JobStatus,
    JobType,
    PendingJob,
    check_transition,
)
from mediagen.services.exceptions import (
    CancellationNotAllowedError,
    DuplicateTaskIdError,
    JobNotFoundError,
)
from mediagen.services.notifications.change_feed import JobChangeKind
from mediagen.uow import UnitOfWork

logger = structlog.get_logger()

STALE_JOB_MESSAGE = "Generation timed out after {minutes} minutes"
ORPHAN_JOB_MESSAGE = "Job was never picked up by the provider"


@dataclass
class TransitionOutcome:
    """Result of applying a reported status to a job."""

    job: PendingJob
    changed: bool
    previous_status: JobStatus


class PendingJobStore:
    """Durable record of in-flight generation jobs."""

    def __init__(
        self,
        retention_days: int = 7,
        image_timeout_minutes: int = 10,
        video_timeout_minutes: int = 10,
        orphan_timeout_minutes: int = 30,
        cancel_grace_seconds: int = 120,
    ):
        """Initialize store.

        Args:
            retention_days: Age after which terminal jobs are deleted
            image_timeout_minutes: Age after which a non-terminal image job fails
            video_timeout_minutes: Age after which a non-terminal video job fails
            orphan_timeout_minutes: Age after which a job still ``pending`` fails
            cancel_grace_seconds: Minimum job age before a user may cancel it
        """
        self.retention_days = retention_days
        self.timeouts = {
            JobType.IMAGE: image_timeout_minutes,
            JobType.VIDEO: video_timeout_minutes,
        }
        self.orphan_timeout_minutes = orphan_timeout_minutes
        self.cancel_grace_seconds = cancel_grace_seconds

    async def create(self, uow: UnitOfWork, job: PendingJob) -> PendingJob:
        """Insert a new job.

        Raises:
            DuplicateTaskIdError: If a job with the same task id exists
        """
        if await uow.pending_jobs.get_by_task_id(job.task_id) is not None:
            raise DuplicateTaskIdError(job.task_id)

        try:
            await uow.pending_jobs.add(job)
        except IntegrityError as e:
            raise DuplicateTaskIdError(job.task_id) from e

        uow.record_change(JobChangeKind.INSERT, job)
        logger.info(
            "job.created",
            task_id=job.task_id,
            user_id=job.user_id,
            provider=job.provider.value,
            job_type=job.job_type.value,
        )
        return job

    async def find_by_task_id(
        self, uow: UnitOfWork, task_id: str, *alternate_ids: str, for_update: bool = False
    ) -> PendingJob | None:
        """Look a job up by its task id, then by each alternate id in order."""
        for candidate in (task_id, *alternate_ids):
            job = await uow.pending_jobs.get_by_task_id(candidate, for_update=for_update)
            if job is not None:
                if candidate != task_id:
                    logger.info("job.matched_alternate_id", task_id=task_id, matched=candidate)
                return job
        return None

    async def get_for_user(self, uow: UnitOfWork, user_id: str, task_id: str) -> PendingJob:
        """Fetch a job owned by ``user_id``.

        Raises:
            JobNotFoundError: If the job does not exist or belongs to another user
        """
        job = await uow.pending_jobs.get_for_user(user_id, task_id)
        if job is None:
            raise JobNotFoundError(task_id)
        return job

    async def list_for_user(
        self,
        uow: UnitOfWork,
        user_id: str,
        statuses: Iterable[JobStatus] | None = None,
        limit: int = 100,
    ) -> list[PendingJob]:
        return await uow.pending_jobs.list_for_user(user_id, statuses, limit)

    async def transition(
        self,
        uow: UnitOfWork,
        task_id: str,
        new_status: JobStatus,
        result_url: str | None = None,
        error_message: str | None = None,
        job: PendingJob | None = None,
    ) -> TransitionOutcome:
        """Apply a reported status to a job.

        The write is a compare-and-set on the status the job had when read. If
        another writer moved the job first, the fresh row is re-checked: a benign
        redelivery becomes a no-op, anything else is retried against the new status.

        Args:
            uow: Active unit of work
            task_id: Job's task id
            new_status: Status reported by the provider
            result_url: Output URL (required for ``completed``)
            error_message: Failure description (used for ``failed``)
            job: Already-loaded job, skips the lookup

        Returns:
            TransitionOutcome with the current job and whether it changed

        Raises:
            JobNotFoundError: If no job has ``task_id``
            InvalidTransitionError: If the state machine forbids the move
            ValueError: If ``completed`` is reported without a result URL
        """
        if new_status == JobStatus.COMPLETED and not result_url:
            raise ValueError("result_url is required to complete a job")

        if job is None:
            job = await uow.pending_jobs.get_by_task_id(task_id, for_update=True)
        if job is None:
            raise JobNotFoundError(task_id)

        while True:
            current = job.status
            if not check_transition(current, new_status):
                logger.info(
                    "job.transition_ignored",
                    task_id=job.task_id,
                    status=current.value,
                    reported=new_status.value,
                )
                return TransitionOutcome(job=job, changed=False, previous_status=current)

            now = utcnow()
            values: dict = {"status": new_status, "updated_at": now}
            if new_status == JobStatus.COMPLETED:
                values.update(result_url=result_url, error_message=None, completed_at=now)
            elif new_status == JobStatus.FAILED:
                values.update(error_message=error_message or "Generation failed", completed_at=now)

            applied = await uow.pending_jobs.update_if_status(job.id, [current], values)
            job = await uow.pending_jobs.get_by_task_id(job.task_id, refresh=True)
            if job is None:
                raise JobNotFoundError(task_id)

            if applied:
                uow.record_change(JobChangeKind.UPDATE, job)
                logger.info(
                    "job.transitioned",
                    task_id=job.task_id,
                    from_status=current.value,
                    to_status=new_status.value,
                )
                return TransitionOutcome(job=job, changed=True, previous_status=current)

            logger.debug(
                "job.transition_raced",
                task_id=job.task_id,
                expected=current.value,
                actual=job.status.value,
            )

    async def cancel(self, uow: UnitOfWork, user_id: str, task_id: str) -> PendingJob:
        """Record a user cancellation.

        The job's status is left to the provider; cancellation only suppresses the
        push notification and hides the job from the live notification list.

        Raises:
            JobNotFoundError: If the user owns no such job
            CancellationNotAllowedError: If the job is terminal or younger than the
                grace period
        """
        job = await self.get_for_user(uow, user_id, task_id)
        if job.is_cancelled:
            return job
        if job.is_terminal:
            raise CancellationNotAllowedError(f"Job {task_id} has already finished")

        now = utcnow()
        remaining = self.cancel_grace_seconds - (now - job.created_at).total_seconds()
        if remaining > 0:
            raise CancellationNotAllowedError(
                f"Job {task_id} can be cancelled in {int(remaining) + 1} seconds"
            )

        if not await uow.pending_jobs.mark_cancelled(job.id, now):
            job = await uow.pending_jobs.get_by_task_id(task_id, refresh=True)
            if job is not None and job.is_cancelled:
                return job
            raise CancellationNotAllowedError(f"Job {task_id} has already finished")

        job = await uow.pending_jobs.get_by_task_id(task_id, refresh=True)
        uow.record_change(JobChangeKind.UPDATE, job)
        logger.info("job.cancelled", task_id=task_id, user_id=user_id)
        return job

    async def mark_notification_sent(self, uow: UnitOfWork, job_id: UUID) -> bool:
        return await uow.pending_jobs.mark_notification_sent(job_id, utcnow())

    async def clear_notification_sent(self, uow: UnitOfWork, job_id: UUID) -> None:
        await uow.pending_jobs.clear_notification_sent(job_id, utcnow())

    async def sweep_expired(self, uow: UnitOfWork, now: datetime | None = None) -> int:
        """Delete terminal jobs completed more than ``retention_days`` ago.

        Returns:
            Number of deleted jobs
        """
        now = now or utcnow()
        expired = await uow.pending_jobs.list_terminal_completed_before(
            now - timedelta(days=self.retention_days)
        )
        deleted = await uow.pending_jobs.delete_by_ids([job.id for job in expired])
        for job in expired:
            uow.record_change(JobChangeKind.DELETE, job)

        if deleted:
            logger.info("job.sweep.expired_deleted", count=deleted)
        return deleted

    async def fail_stale(
        self, uow: UnitOfWork, now: datetime | None = None, user_id: str | None = None
    ) -> list[PendingJob]:
        """Fail non-terminal jobs older than their type's timeout."""
        now = now or utcnow()
        failed: list[PendingJob] = []
        for job_type, minutes in self.timeouts.items():
            stale = await uow.pending_jobs.list_stale(
                job_type, now - timedelta(minutes=minutes), user_id=user_id
            )
            for job in stale:
                outcome = await self.transition(
                    uow,
                    job.task_id,
                    JobStatus.FAILED,
                    error_message=STALE_JOB_MESSAGE.format(minutes=minutes),
                    job=job,
                )
                if outcome.changed:
                    failed.append(outcome.job)

        if failed:
            logger.warning("job.sweep.stale_failed", count=len(failed))
        return failed

    async def fail_orphans(
        self, uow: UnitOfWork, user_id: str, now: datetime | None = None
    ) -> list[PendingJob]:
        """Fail a user's jobs that never left ``pending``."""
        now = now or utcnow()
        orphans = await uow.pending_jobs.list_orphans(
            user_id, now - timedelta(minutes=self.orphan_timeout_minutes)
        )
        failed: list[PendingJob] = []
        for job in orphans:
            outcome = await self.transition(
                uow, job.task_id, JobStatus.FAILED, error_message=ORPHAN_JOB_MESSAGE, job=job
            )
            if outcome.changed:
                failed.append(outcome.job)

        if failed:
            logger.warning("job.sweep.orphans_failed", user_id=user_id, count=len(failed))
        return failed
