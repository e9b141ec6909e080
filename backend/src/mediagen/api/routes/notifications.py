"""Job notification API endpoints.

- POST /api/notifications/listen - Start mirroring the caller's jobs into notifications
- DELETE /api/notifications/listen - Stop listening and release resources
- GET /api/notifications - Current notifications, newest first
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from mediagen.api.dependencies import get_current_user_id, get_notifier_hub
from mediagen.services.notifications.notifier import NotifierHub

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class NotificationDTO(BaseModel):
    """Data Transfer Object for one job notification."""

    id: str = Field(..., description="Notification id")
    task_id: str = Field(..., description="Provider task id of the job")
    job_type: str = Field(..., description="image or video")
    title: str = Field(..., description="Display title")
    message: str = Field(..., description="Progress or outcome text")
    progress: float = Field(..., description="Estimated progress between 0 and 1")
    state: str = Field(..., description="in_progress, completed or failed")
    thumbnail_url: str | None = Field(default=None, description="Preview image")
    error_message: str | None = Field(default=None, description="Failure reason")
    created_at: str = Field(..., description="Notification creation time (UTC, ISO 8601)")


class ListenResponse(BaseModel):
    listening: bool = Field(..., description="True while the caller has an active notifier")
    watched_jobs: int = Field(default=0, description="In-flight jobs being watched")


class NotificationsResponse(BaseModel):
    notifications: list[NotificationDTO] = Field(..., description="Newest first")


@router.post("/listen", response_model=ListenResponse)
async def start_listening(
    user_id: str = Depends(get_current_user_id),
    hub: NotifierHub = Depends(get_notifier_hub),
) -> ListenResponse:
    notifier = await hub.start(user_id)
    return ListenResponse(listening=True, watched_jobs=len(notifier.watched))


@router.delete("/listen", response_model=ListenResponse)
async def stop_listening(
    user_id: str = Depends(get_current_user_id),
    hub: NotifierHub = Depends(get_notifier_hub),
) -> ListenResponse:
    await hub.stop(user_id)
    return ListenResponse(listening=False)


@router.get("", response_model=NotificationsResponse)
async def list_notifications(
    user_id: str = Depends(get_current_user_id),
    hub: NotifierHub = Depends(get_notifier_hub),
) -> NotificationsResponse:
    """List notifications.

    HTTP Status Codes:
        200: Notifications of the active notifier
        409: Not listening (POST /api/notifications/listen first)
    """
    notifier = hub.get(user_id)
    if notifier is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Not listening")
    return NotificationsResponse(
        notifications=[NotificationDTO(**n.as_dict()) for n in notifier.list_notifications()]
    )
