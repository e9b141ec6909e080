"""Job sweep worker.

Runs periodically to keep the pending_jobs table bounded and honest:
- deletes terminal jobs older than the retention window
- fails non-terminal jobs that exceeded their type's timeout

Both sweeps go through PendingJobStore inside a UnitOfWork, so deletions and
failures reach the change feed like any other job change.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

import structlog

from mediagen.core.config import Settings
from mediagen.core.timezone import utcnow
from mediagen.services.job_store import PendingJobStore

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """Outcome of one sweep pass."""

    expired: int = 0
    timed_out: list[str] = field(default_factory=list)
    dry_run: bool = False


def build_job_store(settings: Settings) -> PendingJobStore:
    return PendingJobStore(
        retention_days=settings.job_retention_days,
        image_timeout_minutes=settings.image_timeout_minutes,
        video_timeout_minutes=settings.video_timeout_minutes,
        orphan_timeout_minutes=settings.orphan_timeout_minutes,
        cancel_grace_seconds=settings.cancel_grace_seconds,
    )


async def sweep_once(
    uow_factory: Callable,
    store: PendingJobStore,
    now: datetime | None = None,
    dry_run: bool = False,
) -> SweepReport:
    """Run the retention sweep and the stale-job timeout once.

    Args:
        uow_factory: UnitOfWork factory
        store: Pending job store carrying the retention and timeout settings
        now: Reference time (default: current UTC time)
        dry_run: Count affected jobs without changing them

    Returns:
        SweepReport with the number of deleted jobs and the task ids failed
    """
    now = now or utcnow()

    if dry_run:
        async with await uow_factory() as uow:
            expired = await uow.pending_jobs.list_terminal_completed_before(
                now - timedelta(days=store.retention_days)
            )
            stale = []
            for job_type, minutes in store.timeouts.items():
                stale.extend(
                    await uow.pending_jobs.list_stale(job_type, now - timedelta(minutes=minutes))
                )
        return SweepReport(
            expired=len(expired), timed_out=[job.task_id for job in stale], dry_run=True
        )

    async with await uow_factory() as uow:
        expired_count = await store.sweep_expired(uow, now)

    async with await uow_factory() as uow:
        failed = await store.fail_stale(uow, now)
        timed_out = [job.task_id for job in failed]

    return SweepReport(expired=expired_count, timed_out=timed_out)


async def run_sweep_worker(uow_factory: Callable, settings: Settings) -> None:
    """Main worker loop for job sweeps.

    Sweeps every SWEEP_INTERVAL_SECONDS; errors are logged and the next pass
    retries. Cancellation stops the loop.

    Args:
        uow_factory: UnitOfWork factory (publishes to the app's change feed)
        settings: Application settings (interval, retention, timeouts)
    """
    store = build_job_store(settings)

    logger.info(
        "worker.started",
        worker="sweep",
        interval_seconds=settings.sweep_interval_seconds,
        retention_days=settings.job_retention_days,
    )

    try:
        while True:
            try:
                report = await sweep_once(uow_factory, store)
                if report.expired or report.timed_out:
                    logger.info(
                        "worker.sweep_completed",
                        expired=report.expired,
                        timed_out=len(report.timed_out),
                    )

                await asyncio.sleep(settings.sweep_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker="sweep",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker="sweep")
        raise
