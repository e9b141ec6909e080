"""fal.ai queue adapter.

Jobs go to ``https://queue.fal.run/<model>`` with the webhook URL in the
``fal_webhook`` query parameter. Completion arrives as a callback with
``status`` OK or ERROR and the result under ``payload``.
"""

import json
from typing import Any
from uuid import uuid4

import structlog

from mediagen.models.pending_job import JobStatus, JobType, Provider
from mediagen.services.exceptions import MalformedWebhookError, SubmissionError
from mediagen.services.providers.base import (
    CallbackEvent,
    GenerationRequest,
    ProviderAdapter,
    SubmissionResult,
)
from mediagen.services.providers.bindings import QueryParamBinding
from mediagen.services.providers.identifiers import IdentifierParser, first_value

logger = structlog.get_logger()

QUEUE_BASE_URL = "https://queue.fal.run"

SUBMISSION_ID = IdentifierParser("request_id", "gateway_request_id", "requestId")
CALLBACK_IDS = IdentifierParser(
    "request_id",
    "requestId",
    "gateway_request_id",
    "gatewayRequestId",
    "payload.request_id",
    "payload.requestId",
)
RESULT_URL_PATHS = (
    "payload.video.url",
    "video.url",
    "payload.images.0.url",
    "images.0.url",
    "payload.image.url",
)
ERROR_PATHS = ("error", "payload.detail")


class FalAIAdapter(ProviderAdapter):
    """fal.ai queue API (async with webhook query parameter)."""

    name = Provider.FALAI
    webhook_binding = QueryParamBinding("fal_webhook")

    def build_body(self, request: GenerationRequest) -> dict[str, Any]:
        body: dict[str, Any] = {"prompt": request.prompt, "aspect_ratio": request.aspect_ratio}
        if request.image_url:
            body["image_url"] = request.image_url
        if request.video_url:
            body["video_url"] = request.video_url
        if request.job_type == JobType.VIDEO and request.duration is not None:
            body["duration"] = str(request.duration)
        body.update(request.options)
        return body

    async def submit(self, request: GenerationRequest) -> SubmissionResult:
        """Submit to the fal.ai queue.

        Returns:
            SubmissionResult whose task id is the queue request id (or the
            client-generated id when the response carries none)

        Raises:
            SubmissionError: Provider rejected the request or the network failed
        """
        client_task_id = str(uuid4())
        model_path = request.endpoint or request.model
        endpoint, body = self.bind_webhook(
            f"{QUEUE_BASE_URL}/{model_path}", self.build_body(request)
        )

        response = await self.send(
            "POST",
            endpoint,
            json=body,
            headers={"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"},
        )
        data = self.json_or_empty(response)
        identifier = SUBMISSION_ID.parse(data, fallback=client_task_id)

        if identifier.from_client:
            logger.warning("falai.request_id_missing", client_task_id=client_task_id)

        metadata: dict[str, Any] = {"endpoint": model_path, "fal_request_id": identifier.value}
        if isinstance(data, dict):
            for key in ("status_url", "response_url", "cancel_url"):
                if data.get(key):
                    metadata[key] = data[key]

        logger.info(
            "falai.submitted",
            task_id=identifier.value,
            id_source=identifier.source,
            model=model_path,
        )
        return SubmissionResult(
            provider_task_id=identifier.value,
            client_task_id=client_task_id,
            id_source=identifier.source,
            metadata=metadata,
        )

    def matches_callback(self, payload: Any) -> bool:
        return (
            isinstance(payload, dict)
            and CALLBACK_IDS.find(payload) is not None
            and payload.get("status") in ("OK", "ERROR")
        )

    def parse_callback(self, payload: Any) -> CallbackEvent:
        if not isinstance(payload, dict):
            raise MalformedWebhookError("fal.ai callback must be a JSON object")

        identifiers = CALLBACK_IDS.find_all(payload)
        if not identifiers:
            raise MalformedWebhookError("fal.ai callback carries no request id")

        raw_status = payload.get("status")
        result_url = None
        error = None

        if raw_status == "OK":
            result_url = first_value(payload, RESULT_URL_PATHS)
            if result_url:
                status = JobStatus.COMPLETED
            else:
                status = JobStatus.FAILED
                error = "Provider reported success without an output URL"
        elif raw_status == "ERROR":
            status = JobStatus.FAILED
            detail = first_value(payload, ERROR_PATHS)
            if detail is None:
                error = "Generation failed"
            elif isinstance(detail, str):
                error = detail
            else:
                error = json.dumps(detail)[:1000]
        else:
            status = JobStatus.PROCESSING

        return CallbackEvent(
            task_id=identifiers[0].value,
            status=status,
            result_url=result_url,
            error=error,
            alternate_task_ids=tuple(i.value for i in identifiers[1:]),
        )

    async def cancel(self, task_id: str, job_metadata: dict[str, Any]) -> bool:
        """Ask the queue to drop a request that has not started yet."""
        cancel_url = job_metadata.get("cancel_url")
        if not cancel_url:
            model_path = job_metadata.get("endpoint") or job_metadata.get("model")
            if not model_path:
                return False
            cancel_url = f"{QUEUE_BASE_URL}/{model_path}/requests/{task_id}/cancel"

        try:
            await self.send("PUT", cancel_url, headers={"Authorization": f"Key {self.api_key}"})
        except SubmissionError as e:
            logger.warning("falai.cancel_failed", task_id=task_id, error=str(e))
            return False

        logger.info("falai.cancelled", task_id=task_id)
        return True
