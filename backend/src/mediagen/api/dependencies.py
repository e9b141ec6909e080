"""FastAPI dependencies for request context and service access.

Services are constructed once in the application lifespan and stored on
``app.state``; these helpers hand them to route handlers.
"""

from typing import Annotated, Callable

from fastapi import Header, HTTPException, Request, status

from mediagen.core.config import Settings
from mediagen.services.credit_ledger import CreditLedger
from mediagen.services.job_store import PendingJobStore
from mediagen.services.notifications.notifier import NotifierHub
from mediagen.services.reconciler import WebhookReconciler
from mediagen.services.submission import JobSubmissionService
from mediagen.uow import UnitOfWork


def get_settings(request: Request) -> Settings:
    """Get application settings instance from app state.

    Returns:
        Settings loaded during application startup
    """
    return request.app.state.settings


def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """Identify the caller from the upstream-authenticated ``X-User-Id`` header.

    Raises:
        HTTPException: 401 Unauthorized if the header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header"
        )
    return x_user_id.strip()


def get_uow_factory(request: Request) -> Callable[[], UnitOfWork]:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.pending_jobs.get_by_task_id(task_id)
    """
    return request.app.state.uow_factory


def get_credit_ledger(request: Request) -> CreditLedger:
    return request.app.state.credit_ledger


def get_job_store(request: Request) -> PendingJobStore:
    return request.app.state.job_store


def get_submission_service(request: Request) -> JobSubmissionService:
    return request.app.state.submission_service


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler


def get_notifier_hub(request: Request) -> NotifierHub:
    return request.app.state.notifier_hub
