"""PendingJob entity - durable record of an in-flight generation request."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from mediagen.core.timezone import utcnow


class JobStatus(str, Enum):
    """Pending job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


NON_TERMINAL_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobType(str, Enum):
    """Kind of media a job produces."""

    IMAGE = "image"
    VIDEO = "video"


class Provider(str, Enum):
    """External generation providers."""

    RUNWARE = "runware"
    WAVESPEED = "wavespeed"
    FALAI = "falai"


class InvalidTransitionError(Exception):
    """Raised when attempting a job status transition the state machine forbids."""

    pass


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def check_transition(current: JobStatus, target: JobStatus) -> bool:
    """Decide whether moving from ``current`` to ``target`` changes the job.

    Args:
        current: Status currently persisted
        target: Status reported by the provider

    Returns:
        True if the transition must be applied, False if it is a benign
        redelivery (terminal -> terminal, processing -> processing)

    Raises:
        InvalidTransitionError: If the state machine forbids the move
    """
    if target in ALLOWED_TRANSITIONS[current]:
        return True
    if current.is_terminal and target.is_terminal:
        return False
    if current == JobStatus.PROCESSING and target == JobStatus.PROCESSING:
        return False
    raise InvalidTransitionError(f"Cannot move job from {current.value} to {target.value}.")


class PendingJob(SQLModel, table=True):
    """PendingJob tracks one provider request from submission to terminal state."""

    __tablename__ = "pending_jobs"  # type: ignore[assignment]
    __table_args__ = (Index("ix_pending_jobs_user_id_status", "user_id", "status"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: str = Field(max_length=255, index=True)
    task_id: str = Field(max_length=255, unique=True, index=True)
    provider: Provider
    job_type: JobType
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    result_url: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    job_metadata: dict = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )
    device_token: Optional[str] = Field(default=None, max_length=255)
    notification_sent: bool = Field(default=False)
    cancelled_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    @property
    def cost(self) -> Decimal:
        """Cost recorded at submission time (``metadata.cost``), zero when absent."""
        raw = self.job_metadata.get("cost") if self.job_metadata else None
        if raw is None:
            return Decimal("0")
        return Decimal(str(raw))


class PendingJobRead(SQLModel):
    """Detached snapshot of a PendingJob, used for change events and API responses."""

    id: UUID
    user_id: str
    task_id: str
    provider: Provider
    job_type: JobType
    status: JobStatus
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    job_metadata: dict = {}
    device_token: Optional[str] = None
    notification_sent: bool = False
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None
