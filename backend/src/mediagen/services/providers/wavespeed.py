"""WaveSpeed adapter.

WaveSpeed accepts a prediction and is then polled at
``/api/v3/predictions/{id}/result`` until it reports ``completed`` or ``failed``.
When webhooks are enabled the callback URL is appended to the submission endpoint
as ``webhook=<encoded>``; callbacks are signed with ``webhook-signature`` headers.
"""

from typing import Any
from uuid import uuid4

import structlog

from mediagen.models.pending_job import JobStatus, Provider
from mediagen.services.exceptions import MalformedWebhookError
from mediagen.services.providers.base import (
    CallbackEvent,
    GenerationRequest,
    ProviderAdapter,
    ProviderStatus,
    SubmissionResult,
)
from mediagen.services.providers.bindings import AppendedQueryParamBinding
from mediagen.services.providers.identifiers import IdentifierParser, lookup_path

logger = structlog.get_logger()

API_BASE_URL = "https://api.wavespeed.ai/api/v3"

SUBMISSION_ID = IdentifierParser("data.id", "id", "request_id")
CALLBACK_ID = IdentifierParser("id", "data.id")

STATUS_MAP = {
    "created": JobStatus.PENDING,
    "processing": JobStatus.PROCESSING,
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
}


def _prediction(payload: Any) -> dict:
    """Unwrap ``{code, message, data: {...}}`` envelopes."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    return payload if isinstance(payload, dict) else {}


def _normalize(prediction: dict) -> ProviderStatus:
    raw_status = str(prediction.get("status", "")).lower()
    status = STATUS_MAP.get(raw_status, JobStatus.PROCESSING)
    outputs = prediction.get("outputs") or []
    result_url = outputs[0] if outputs and isinstance(outputs[0], str) else None

    if status == JobStatus.COMPLETED and not result_url:
        return ProviderStatus(
            status=JobStatus.FAILED, error="Provider reported success without an output URL"
        )
    if status == JobStatus.FAILED:
        return ProviderStatus(
            status=JobStatus.FAILED, error=str(prediction.get("error") or "Generation failed")
        )
    return ProviderStatus(status=status, result_url=result_url)


class WaveSpeedAdapter(ProviderAdapter):
    """WaveSpeed predictions API (sync submission with client-side polling)."""

    name = Provider.WAVESPEED
    webhook_binding = AppendedQueryParamBinding("webhook")
    supports_polling = True

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def build_body(self, request: GenerationRequest) -> dict[str, Any]:
        body: dict[str, Any] = {"prompt": request.prompt, "aspect_ratio": request.aspect_ratio}
        if request.image_url:
            body["image"] = request.image_url
        if request.video_url:
            body["video"] = request.video_url
        if request.duration is not None:
            body["duration"] = request.duration
        body["enable_sync_mode"] = False
        body.update(request.options)
        return body

    async def submit(self, request: GenerationRequest) -> SubmissionResult:
        """Create a prediction.

        Raises:
            SubmissionError: Provider rejected the request or the network failed
        """
        client_task_id = str(uuid4())
        model_path = request.endpoint or request.model
        endpoint, body = self.bind_webhook(f"{API_BASE_URL}/{model_path}", self.build_body(request))

        response = await self.send("POST", endpoint, json=body, headers=self.headers)
        data = self.json_or_empty(response)
        identifier = SUBMISSION_ID.parse(data, fallback=client_task_id)

        logger.info(
            "wavespeed.submitted",
            task_id=identifier.value,
            id_source=identifier.source,
            model=model_path,
            webhook=self.uses_webhook,
        )
        return SubmissionResult(
            provider_task_id=identifier.value,
            client_task_id=client_task_id,
            id_source=identifier.source,
            metadata={"endpoint": model_path},
        )

    async def poll_status(self, task_id: str) -> ProviderStatus:
        """Fetch prediction status.

        Raises:
            TransientSubmissionError: Network failure, 429 or 5xx (retry on next tick)
            PermanentSubmissionError: Prediction unknown or request rejected
        """
        response = await self.send(
            "GET", f"{API_BASE_URL}/predictions/{task_id}/result", headers=self.headers
        )
        result = _normalize(_prediction(self.json_or_empty(response)))
        logger.debug("wavespeed.polled", task_id=task_id, status=result.status.value)
        return result

    def matches_callback(self, payload: Any) -> bool:
        prediction = _prediction(payload)
        return bool(prediction.get("id")) and lookup_path(prediction, "status") in (
            "completed",
            "failed",
        )

    def parse_callback(self, payload: Any) -> CallbackEvent:
        if not isinstance(payload, dict):
            raise MalformedWebhookError("WaveSpeed callback must be a JSON object")

        identifier = CALLBACK_ID.find(payload)
        if identifier is None:
            raise MalformedWebhookError("WaveSpeed callback carries no prediction id")

        result = _normalize(_prediction(payload))
        # Callbacks are only sent for finished predictions; anything else is progress
        status = result.status if result.status.is_terminal else JobStatus.PROCESSING
        return CallbackEvent(
            task_id=identifier.value,
            status=status,
            result_url=result.result_url,
            error=result.error,
        )
