"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from mediagen.models.credits import CreditTransaction, TransactionType, UserCredits
from mediagen.models.pending_job import (
    InvalidTransitionError,
    JobStatus,
    JobType,
    PendingJob,
    PendingJobRead,
    Provider,
)

__all__ = [
    "PendingJob",
    "PendingJobRead",
    "JobStatus",
    "JobType",
    "Provider",
    "InvalidTransitionError",
    "UserCredits",
    "CreditTransaction",
    "TransactionType",
]
