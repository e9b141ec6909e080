"""Job submission.

Checks the user's balance against the request cost, hands the request to the
provider adapter (outside any database transaction) and records the pending job
once the provider has accepted it. Credits are only charged on completion.
"""

from typing import Callable

import structlog

from mediagen.models.pending_job import JobStatus, PendingJob, PendingJobRead, Provider
from mediagen.services.credit_ledger import CreditLedger, round_credits
from mediagen.services.exceptions import InsufficientCreditsError
from mediagen.services.job_store import PendingJobStore
from mediagen.services.providers.base import GenerationRequest, validate_request
from mediagen.services.providers.identifiers import CLIENT_SOURCE
from mediagen.services.providers.registry import ProviderRegistry

logger = structlog.get_logger()


class JobSubmissionService:
    """Submit generation requests and record them as pending jobs."""

    def __init__(
        self,
        uow_factory: Callable,
        registry: ProviderRegistry,
        store: PendingJobStore,
        ledger: CreditLedger,
    ):
        self.uow_factory = uow_factory
        self.registry = registry
        self.store = store
        self.ledger = ledger

    async def submit(
        self,
        user_id: str,
        provider: Provider | str,
        request: GenerationRequest,
        device_token: str | None = None,
    ) -> PendingJobRead:
        """Submit one job.

        Args:
            user_id: Requesting user
            provider: Provider to run the job on
            request: Generation request (cost included)
            device_token: Optional push token notified on completion

        Returns:
            Snapshot of the created pending job

        Raises:
            RequestValidationError: Request is unusable (nothing is sent)
            ProviderConfigurationError: Unknown provider
            InsufficientCreditsError: Balance does not cover the cost
            SubmissionError: Provider rejected the job (no row is created)
            DuplicateTaskIdError: Provider reused a task id already on record
        """
        validate_request(request)
        adapter = self.registry.get(provider)
        cost = round_credits(request.cost)

        async with await self.uow_factory() as uow:
            balance = await self.ledger.get_balance(uow, user_id)
        if balance < cost:
            logger.info(
                "job.submit_rejected",
                user_id=user_id,
                required=str(cost),
                available=str(balance),
            )
            raise InsufficientCreditsError(user_id, cost, balance)

        submission = await adapter.submit(request)

        metadata = {**request.metadata(), **submission.metadata, "cost": str(cost)}
        if submission.id_source != CLIENT_SOURCE:
            metadata["client_task_id"] = submission.client_task_id

        job = PendingJob(
            user_id=user_id,
            task_id=submission.provider_task_id,
            provider=adapter.name,
            job_type=request.job_type,
            status=JobStatus.PENDING,
            job_metadata=metadata,
            device_token=device_token,
        )
        async with await self.uow_factory() as uow:
            await self.store.create(uow, job)
            snapshot = PendingJobRead.model_validate(job)

        logger.info(
            "job.submitted",
            user_id=user_id,
            task_id=snapshot.task_id,
            provider=adapter.name.value,
            cost=str(cost),
            id_source=submission.id_source,
        )
        return snapshot
