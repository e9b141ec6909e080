"""Generation job API endpoints.

- POST /api/jobs - Submit a generation job (balance checked upfront, charged on completion)
- GET /api/jobs - List the caller's jobs, optionally filtered by status
- GET /api/jobs/{task_id} - Get one of the caller's jobs
- POST /api/jobs/{task_id}/cancel - Cancel an in-flight job after its grace period

Every route is scoped to the user named by the X-User-Id header.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from mediagen.api.dependencies import (
    get_current_user_id,
    get_job_store,
    get_notifier_hub,
    get_submission_service,
    get_uow_factory,
)
from mediagen.models.pending_job import JobStatus, JobType, PendingJobRead, Provider
from mediagen.services.exceptions import (
    CancellationNotAllowedError,
    DuplicateTaskIdError,
    InsufficientCreditsError,
    JobNotFoundError,
    PermanentSubmissionError,
    ProviderConfigurationError,
    RequestValidationError,
    SubmissionError,
)
from mediagen.services.job_store import PendingJobStore
from mediagen.services.notifications.notifier import NotifierHub
from mediagen.services.providers.base import GenerationRequest
from mediagen.services.submission import JobSubmissionService

logger = structlog.get_logger()
router = APIRouter(prefix="/api/jobs", tags=["jobs"])


# Request/Response Models


class SubmitJobRequest(BaseModel):
    """Request model for submitting a generation job."""

    provider: Provider = Field(..., description="Provider to run the job on")
    job_type: JobType = Field(..., description="Kind of media to generate")
    model: str = Field(..., description="Provider model identifier", min_length=1)
    prompt: str = Field(..., description="Generation prompt")
    cost: Decimal = Field(..., description="Credits charged when the job completes", ge=0)
    aspect_ratio: str = Field(default="1:1", description="Output aspect ratio")
    image_url: str | None = Field(default=None, description="Uploaded input image URL")
    video_url: str | None = Field(default=None, description="Uploaded input video URL")
    duration: int | None = Field(default=None, description="Video duration in seconds", gt=0)
    endpoint: str | None = Field(default=None, description="Provider model path, if not `model`")
    title: str | None = Field(default=None, description="Display title for notifications")
    options: dict[str, Any] = Field(
        default_factory=dict, description="Provider-specific parameters passed through as-is"
    )
    device_token: str | None = Field(
        default=None, description="Push token to notify on completion", max_length=255
    )

    def to_generation_request(self) -> GenerationRequest:
        return GenerationRequest(
            job_type=self.job_type,
            model=self.model,
            prompt=self.prompt,
            cost=self.cost,
            aspect_ratio=self.aspect_ratio,
            image_url=self.image_url,
            video_url=self.video_url,
            duration=self.duration,
            endpoint=self.endpoint,
            title=self.title,
            options=self.options,
        )


class JobResponse(BaseModel):
    """Job snapshot returned to the owning user."""

    task_id: str = Field(..., description="Provider task identifier")
    provider: Provider = Field(..., description="Provider running the job")
    job_type: JobType = Field(..., description="Kind of media")
    status: JobStatus = Field(..., description="pending, processing, completed or failed")
    result_url: str | None = Field(default=None, description="Output URL once completed")
    error_message: str | None = Field(default=None, description="Failure reason once failed")
    cost: str | None = Field(default=None, description="Credits charged on completion")
    title: str | None = Field(default=None, description="Display title")
    cancelled: bool = Field(..., description="True if the user cancelled the job")
    created_at: datetime = Field(..., description="Submission time (UTC)")
    completed_at: datetime | None = Field(default=None, description="Terminal time (UTC)")

    @classmethod
    def from_job(cls, job: PendingJobRead) -> "JobResponse":
        return cls(
            task_id=job.task_id,
            provider=job.provider,
            job_type=job.job_type,
            status=job.status,
            result_url=job.result_url,
            error_message=job.error_message,
            cost=job.job_metadata.get("cost"),
            title=job.job_metadata.get("title"),
            cancelled=job.is_cancelled,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )


class JobsResponse(BaseModel):
    jobs: list[JobResponse] = Field(..., description="Jobs, newest first")


# Endpoints


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def submit_job(
    body: SubmitJobRequest,
    user_id: str = Depends(get_current_user_id),
    submission: JobSubmissionService = Depends(get_submission_service),
) -> JobResponse:
    """Submit a generation job.

    HTTP Status Codes:
        201: Job accepted by the provider and recorded
        402: Balance does not cover the job cost
        422: Invalid request or provider rejected it
        502: Provider unavailable
    """
    try:
        job = await submission.submit(
            user_id, body.provider, body.to_generation_request(), device_token=body.device_token
        )
    except InsufficientCreditsError as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "Insufficient credits",
                "required": str(e.required),
                "available": str(e.available),
            },
        )
    except (RequestValidationError, ProviderConfigurationError) as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except PermanentSubmissionError as e:
        logger.warning("job.submit_rejected_by_provider", provider=e.provider, error=str(e))
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except SubmissionError as e:
        logger.error("job.submit_failed", provider=e.provider, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except DuplicateTaskIdError as e:
        logger.error("job.duplicate_task_id", task_id=e.task_id)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return JobResponse.from_job(job)


@router.get("", response_model=JobsResponse)
async def list_jobs(
    status_filter: list[JobStatus] | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    store: PendingJobStore = Depends(get_job_store),
    uow_factory=Depends(get_uow_factory),
) -> JobsResponse:
    """List the caller's jobs, newest first."""
    async with await uow_factory() as uow:
        jobs = await store.list_for_user(uow, user_id, status_filter, limit)
        snapshots = [PendingJobRead.model_validate(job) for job in jobs]
    return JobsResponse(jobs=[JobResponse.from_job(job) for job in snapshots])


@router.get("/{task_id}", response_model=JobResponse)
async def get_job(
    task_id: str,
    user_id: str = Depends(get_current_user_id),
    store: PendingJobStore = Depends(get_job_store),
    uow_factory=Depends(get_uow_factory),
) -> JobResponse:
    """Get one of the caller's jobs.

    HTTP Status Codes:
        200: Job found
        404: No such job for this user
    """
    try:
        async with await uow_factory() as uow:
            job = await store.get_for_user(uow, user_id, task_id)
            snapshot = PendingJobRead.model_validate(job)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobResponse.from_job(snapshot)


@router.post("/{task_id}/cancel", response_model=JobResponse)
async def cancel_job(
    task_id: str,
    user_id: str = Depends(get_current_user_id),
    hub: NotifierHub = Depends(get_notifier_hub),
    store: PendingJobStore = Depends(get_job_store),
    uow_factory=Depends(get_uow_factory),
) -> JobResponse:
    """Cancel an in-flight job.

    The provider is asked to drop the work when it supports that. If the job
    completes anyway it is still charged, but no push notification is sent.

    HTTP Status Codes:
        200: Job cancelled (or already cancelled)
        404: No such job for this user
        409: Job already finished or still inside its grace period
    """
    notifier = hub.get(user_id)
    try:
        if notifier is not None:
            job = await notifier.cancel(task_id)
        else:
            async with await uow_factory() as uow:
                cancelled = await store.cancel(uow, user_id, task_id)
                job = PendingJobRead.model_validate(cancelled)
    except JobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    except CancellationNotAllowedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return JobResponse.from_job(job)
