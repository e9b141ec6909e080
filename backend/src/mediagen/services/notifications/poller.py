"""Fallback status polling for providers that may never call back.

The poller asks the provider for a job's status at a fixed interval until it
reports a terminal status or the per-type attempt budget runs out, then applies
the outcome through the same settlement path as webhook deliveries.
"""

import asyncio
from typing import Awaitable, Callable

import structlog

from mediagen.models.pending_job import (
    InvalidTransitionError,
    JobStatus,
    JobType,
    PendingJobRead,
)
from mediagen.services.exceptions import (
    PermanentError,
    PollingTimeoutError,
    ProviderJobFailedError,
    TransientError,
)
from mediagen.services.providers.base import ProviderAdapter, ProviderStatus
from mediagen.services.providers.registry import ProviderRegistry
from mediagen.services.settlement import JobOutcomeService, SettlementResult

logger = structlog.get_logger()


class JobPoller:
    """Drive a single job to a terminal status by polling its provider."""

    def __init__(
        self,
        registry: ProviderRegistry,
        outcomes: JobOutcomeService,
        interval_seconds: float = 5.0,
        max_attempts_image: int = 15,
        max_attempts_video: int = 60,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize poller.

        Args:
            registry: Provider adapters
            outcomes: Settlement path shared with the webhook reconciler
            interval_seconds: Delay between polls
            max_attempts_image: Poll budget for image jobs
            max_attempts_video: Poll budget for video jobs
            sleep: Awaitable delay (tests pass a no-op)
        """
        self.registry = registry
        self.outcomes = outcomes
        self.interval_seconds = interval_seconds
        self.max_attempts = {
            JobType.IMAGE: max_attempts_image,
            JobType.VIDEO: max_attempts_video,
        }
        self.sleep = sleep

    async def poll_until_terminal(
        self,
        adapter: ProviderAdapter,
        task_id: str,
        job_type: JobType,
        on_processing: Callable[[], Awaitable[None]] | None = None,
    ) -> ProviderStatus:
        """Poll until the provider reports completed or failed.

        Transient poll failures count as attempts and are retried.

        Args:
            adapter: Polling-capable adapter
            task_id: Provider task id
            job_type: Selects the attempt budget
            on_processing: Awaited once, the first time the provider reports progress

        Returns:
            Terminal ProviderStatus

        Raises:
            PollingTimeoutError: Budget exhausted without a terminal status
            PermanentError: Provider rejected the poll request
        """
        max_attempts = self.max_attempts[job_type]
        reported_processing = False

        for attempt in range(1, max_attempts + 1):
            try:
                result = await adapter.poll_status(task_id)
            except TransientError as e:
                logger.warning(
                    "poller.attempt_failed", task_id=task_id, attempt=attempt, error=str(e)
                )
            else:
                if result.status.is_terminal:
                    logger.info(
                        "poller.terminal",
                        task_id=task_id,
                        status=result.status.value,
                        attempts=attempt,
                    )
                    return result
                if (
                    result.status == JobStatus.PROCESSING
                    and not reported_processing
                    and on_processing is not None
                ):
                    reported_processing = True
                    await on_processing()

            if attempt < max_attempts:
                await self.sleep(self.interval_seconds)

        raise PollingTimeoutError(task_id, max_attempts)

    async def wait_for_result(
        self, adapter: ProviderAdapter, task_id: str, job_type: JobType
    ) -> str:
        """Poll until completion and return the output URL.

        Raises:
            ProviderJobFailedError: Provider reported the job as failed
            PollingTimeoutError: Budget exhausted without a terminal status
        """
        result = await self.poll_until_terminal(adapter, task_id, job_type)
        if result.status == JobStatus.FAILED or not result.result_url:
            raise ProviderJobFailedError(result.error or "Generation failed")
        return result.result_url

    async def drive(self, job: PendingJobRead) -> SettlementResult | None:
        """Poll one job and apply its outcome.

        Returns:
            SettlementResult, or None if the job reached a terminal status by
            another path while polling
        """
        adapter = self.registry.get(job.provider)

        async def mark_processing() -> None:
            await self.outcomes.apply(job.task_id, JobStatus.PROCESSING)

        try:
            result = await self.poll_until_terminal(
                adapter, job.task_id, job.job_type, on_processing=mark_processing
            )
        except PollingTimeoutError as e:
            logger.warning("poller.timed_out", task_id=job.task_id, attempts=e.attempts)
            result = ProviderStatus(status=JobStatus.FAILED, error=str(e))
        except PermanentError as e:
            logger.error("poller.rejected", task_id=job.task_id, error=str(e))
            result = ProviderStatus(status=JobStatus.FAILED, error=str(e))
        except InvalidTransitionError:
            logger.info("poller.already_terminal", task_id=job.task_id)
            return None

        try:
            return await self.outcomes.apply(
                job.task_id, result.status, result_url=result.result_url, error=result.error
            )
        except InvalidTransitionError:
            logger.info("poller.already_terminal", task_id=job.task_id)
            return None
