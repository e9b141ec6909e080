"""Runware adapter.

Requests are a JSON array of tasks: an ``authentication`` task followed by one
``imageInference`` or ``videoInference`` task identified by a client-generated
``taskUUID``. The webhook URL travels in the inference task's ``webhookURL`` field.
"""

from typing import Any
from uuid import uuid4

import structlog

from mediagen.models.pending_job import JobStatus, JobType, Provider
from mediagen.services.exceptions import MalformedWebhookError, PermanentSubmissionError
from mediagen.services.providers.base import (
    CallbackEvent,
    GenerationRequest,
    ProviderAdapter,
    SubmissionResult,
)
from mediagen.services.providers.bindings import BodyFieldBinding
from mediagen.services.providers.identifiers import IdentifierParser, first_value

logger = structlog.get_logger()

API_URL = "https://api.runware.ai/v1"

# Supported output sizes per aspect ratio (multiples of 64, ~1MP)
ASPECT_RATIO_SIZES: dict[str, tuple[int, int]] = {
    "1:1": (1024, 1024),
    "3:2": (1248, 832),
    "2:3": (832, 1248),
    "4:3": (1184, 864),
    "3:4": (864, 1184),
    "4:5": (896, 1152),
    "5:4": (1152, 896),
    "9:16": (768, 1344),
    "16:9": (1344, 768),
    "21:9": (1536, 672),
}
DEFAULT_SIZE = (1024, 1024)

SUBMISSION_ID = IdentifierParser("data.0.taskUUID", "taskUUID")
CALLBACK_ID = IdentifierParser("taskUUID", "taskUuid", "task_uuid")
RESULT_URL_FIELDS = ("videoURL", "videoUrl", "video_url", "imageURL", "imageUrl", "image_url")


def size_for_aspect_ratio(aspect_ratio: str) -> tuple[int, int]:
    """Return (width, height) for an aspect ratio, 1024x1024 when unknown."""
    return ASPECT_RATIO_SIZES.get(aspect_ratio, DEFAULT_SIZE)


def _callback_item(payload: Any) -> dict | None:
    """Locate the task result inside the various callback envelopes."""
    if isinstance(payload, list):
        payload = next((p for p in payload if isinstance(p, dict) and p.get("taskUUID")), None)
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        item = dict(data[0])
        if "error" not in item and payload.get("error"):
            item["error"] = payload["error"]
        return item
    return payload


class RunwareAdapter(ProviderAdapter):
    """Runware task API (async with webhook body field)."""

    name = Provider.RUNWARE
    webhook_binding = BodyFieldBinding("webhookURL", task_index=-1)

    def build_body(self, request: GenerationRequest, task_uuid: str) -> list[dict[str, Any]]:
        width, height = size_for_aspect_ratio(request.aspect_ratio)
        task: dict[str, Any] = {
            "taskType": "videoInference" if request.job_type == JobType.VIDEO else "imageInference",
            "taskUUID": task_uuid,
            "model": request.model,
            "positivePrompt": request.prompt,
            "numberResults": 1,
            "includeCost": True,
            "width": width,
            "height": height,
        }
        if request.job_type == JobType.VIDEO:
            task["deliveryMethod"] = "async"
            if request.duration is not None:
                task["duration"] = request.duration
            if request.image_url:
                task["frameImages"] = [{"inputImage": request.image_url}]
        elif request.image_url:
            task["seedImage"] = request.image_url
        task.update(request.options)
        return [{"taskType": "authentication", "apiKey": self.api_key}, task]

    async def submit(self, request: GenerationRequest) -> SubmissionResult:
        """Submit an inference task.

        Raises:
            SubmissionError: Provider rejected the request or the network failed
        """
        client_task_id = str(uuid4())
        endpoint, body = self.bind_webhook(API_URL, self.build_body(request, client_task_id))

        response = await self.send(
            "POST", endpoint, json=body, headers={"Content-Type": "application/json"}
        )
        data = self.json_or_empty(response)

        # Runware reports task-level failures with HTTP 200 and an "errors" array
        if isinstance(data, dict) and data.get("errors"):
            first_error = data["errors"][0] if isinstance(data["errors"], list) else data["errors"]
            message = (
                first_error.get("message") if isinstance(first_error, dict) else str(first_error)
            )
            raise PermanentSubmissionError(
                f"runware rejected request: {message}", provider=self.name.value
            )

        identifier = SUBMISSION_ID.parse(data, fallback=client_task_id)
        logger.info(
            "runware.submitted",
            task_id=identifier.value,
            id_source=identifier.source,
            model=request.model,
        )
        return SubmissionResult(
            provider_task_id=identifier.value,
            client_task_id=client_task_id,
            id_source=identifier.source,
            metadata={"width": body[-1]["width"], "height": body[-1]["height"]},
        )

    def matches_callback(self, payload: Any) -> bool:
        item = _callback_item(payload)
        return item is not None and CALLBACK_ID.find(item) is not None

    def parse_callback(self, payload: Any) -> CallbackEvent:
        item = _callback_item(payload)
        if item is None:
            raise MalformedWebhookError("Runware callback has no task object")

        identifier = CALLBACK_ID.find(item)
        if identifier is None:
            raise MalformedWebhookError("Runware callback carries no taskUUID")

        result_url = first_value(item, RESULT_URL_FIELDS)
        error = None if result_url else item.get("error")
        raw_status = str(item.get("status", "")).lower()

        if result_url:
            status = JobStatus.COMPLETED
        elif error or raw_status in ("error", "failed"):
            status = JobStatus.FAILED
            error = str(error) if error else "Generation failed"
        else:
            status = JobStatus.PROCESSING
            error = None

        return CallbackEvent(
            task_id=identifier.value, status=status, result_url=result_url, error=error
        )
