"""Repository layer.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from mediagen.repositories.credits import CreditsRepository
from mediagen.repositories.pending_job import PendingJobRepository

__all__ = [
    "PendingJobRepository",
    "CreditsRepository",
]
