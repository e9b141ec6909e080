"""Push notification dispatch.

Completed and failed jobs that carry a device token are announced through an
HTTP push gateway. Delivery is best-effort: failures are logged and reported as
False, never raised, so a gateway outage cannot fail webhook processing.
"""

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from mediagen.models.pending_job import JobStatus, JobType, PendingJobRead

logger = structlog.get_logger()

READY_BODY = "Your AI generation is complete. Tap to view."


@dataclass(slots=True)
class PushMessage:
    """One alert addressed to a device."""

    device_token: str
    job_id: str
    task_id: str
    job_type: JobType
    status: JobStatus
    title: str
    body: str

    @classmethod
    def for_job(cls, job: PendingJobRead) -> "PushMessage":
        """Build the alert for a terminal job.

        Raises:
            ValueError: If the job has no device token
        """
        if not job.device_token:
            raise ValueError(f"Job {job.task_id} has no device token")

        if job.status == JobStatus.COMPLETED:
            title = "Video Ready!" if job.job_type == JobType.VIDEO else "Image Ready!"
            body = READY_BODY
        else:
            title = "Generation Failed"
            body = job.error_message or "Your AI generation could not be completed."

        return cls(
            device_token=job.device_token,
            job_id=str(job.id),
            task_id=job.task_id,
            job_type=job.job_type,
            status=job.status,
            title=title,
            body=body,
        )

    def payload(self) -> dict[str, Any]:
        return {
            "device_token": self.device_token,
            "title": self.title,
            "body": self.body,
            "data": {
                "job_id": self.job_id,
                "task_id": self.task_id,
                "job_type": self.job_type.value,
                "status": self.status.value,
            },
        }


class PushDispatcher:
    """Client for the push gateway."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        """Initialize dispatcher.

        Args:
            url: Gateway endpoint; an empty URL disables dispatch
            api_key: Bearer token for the gateway
            http_client: Shared client (tests inject one with a mock transport)
            timeout: Request timeout when no client is injected
        """
        self.url = url
        self.api_key = api_key
        self.http_client = http_client
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def dispatch(self, message: PushMessage) -> bool:
        """Send one alert.

        Returns:
            True if the gateway accepted it
        """
        if not self.enabled:
            logger.debug("push.disabled", task_id=message.task_id)
            return False

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            if self.http_client is not None:
                response = await self.http_client.post(
                    self.url, json=message.payload(), headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=message.payload(), headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "push.dispatch_failed",
                task_id=message.task_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        logger.info("push.dispatched", task_id=message.task_id, title=message.title)
        return True
