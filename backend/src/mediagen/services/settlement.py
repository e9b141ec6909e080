"""Job outcome settlement.

Webhook deliveries and fallback polling both end here: the reported status is
applied to the job, a completed job is charged its cost in the same transaction,
and after commit the user's device is notified once the job is terminal.
"""

from dataclasses import dataclass
from typing import Callable

import structlog

from mediagen.models.pending_job import JobStatus, PendingJob, PendingJobRead
from mediagen.services.credit_ledger import CreditLedger
from mediagen.services.exceptions import InsufficientCreditsError, JobNotFoundError
from mediagen.services.job_store import PendingJobStore
from mediagen.services.push import PushDispatcher, PushMessage
from mediagen.uow import UnitOfWork

logger = structlog.get_logger()


@dataclass
class SettlementResult:
    """What applying one provider outcome did."""

    job: PendingJobRead
    changed: bool
    charged: bool = False
    shortfall: bool = False
    notified: bool = False


class JobOutcomeService:
    """Apply provider-reported outcomes to jobs and settle their cost."""

    def __init__(
        self,
        uow_factory: Callable,
        store: PendingJobStore,
        ledger: CreditLedger,
        push: PushDispatcher | None = None,
    ):
        self.uow_factory = uow_factory
        self.store = store
        self.ledger = ledger
        self.push = push

    async def apply(
        self,
        task_id: str,
        status: JobStatus,
        result_url: str | None = None,
        error: str | None = None,
        alternate_task_ids: tuple[str, ...] = (),
    ) -> SettlementResult:
        """Apply one reported outcome.

        Settlement runs on every completed delivery; the ledger's per-job
        idempotency key makes repeats free.

        Args:
            task_id: Provider task id
            status: Normalized status
            result_url: Output URL for completed jobs
            error: Failure description for failed jobs
            alternate_task_ids: Secondary ids tried when ``task_id`` matches nothing

        Returns:
            SettlementResult describing the effect

        Raises:
            JobNotFoundError: If no job matches any of the ids
            InvalidTransitionError: If the status cannot follow the current one
        """
        async with await self.uow_factory() as uow:
            job = await self.store.find_by_task_id(
                uow, task_id, *alternate_task_ids, for_update=True
            )
            if job is None:
                raise JobNotFoundError(task_id)

            outcome = await self.store.transition(
                uow, job.task_id, status, result_url=result_url, error_message=error, job=job
            )
            result = SettlementResult(
                job=PendingJobRead.model_validate(outcome.job), changed=outcome.changed
            )
            if outcome.job.status == JobStatus.COMPLETED:
                result.charged, result.shortfall = await self._charge(uow, outcome.job)
                result.job = PendingJobRead.model_validate(outcome.job)

        # Redeliveries retry a push that has not gone out yet
        if result.job.is_terminal:
            result.notified = await self._notify(result.job)
        return result

    async def _charge(self, uow: UnitOfWork, job: PendingJob) -> tuple[bool, bool]:
        """Deduct the job's cost. Returns (charged, shortfall)."""
        cost = job.cost
        if cost <= 0:
            logger.debug("credits.settlement_skipped", task_id=job.task_id, cost=str(cost))
            return False, False

        try:
            await self.ledger.deduct_credits(
                uow,
                job.user_id,
                cost,
                job.id,
                description=f"{job.job_type.value.capitalize()} generation ({job.provider.value})",
            )
        except InsufficientCreditsError as e:
            # The provider already delivered; record the loss and keep the job completed
            logger.error(
                "credits.settlement_shortfall",
                task_id=job.task_id,
                user_id=job.user_id,
                required=str(e.required),
                available=str(e.available),
            )
            return False, True
        return True, False

    async def _notify(self, job: PendingJobRead) -> bool:
        if self.push is None or not job.device_token:
            return False
        if job.notification_sent or job.is_cancelled:
            logger.debug(
                "push.suppressed",
                task_id=job.task_id,
                notification_sent=job.notification_sent,
                cancelled=job.is_cancelled,
            )
            return False

        # Claim before sending so concurrent deliveries push at most once
        async with await self.uow_factory() as uow:
            claimed = await self.store.mark_notification_sent(uow, job.id)
        if not claimed:
            logger.debug("push.already_claimed", task_id=job.task_id)
            return False

        if not await self.push.dispatch(PushMessage.for_job(job)):
            async with await self.uow_factory() as uow:
                await self.store.clear_notification_sent(uow, job.id)
            return False
        return True
