"""Webhook reconciler.

Server-side boundary for provider callbacks. A callback is attributed to a
provider (query parameter or payload shape), authenticated by that provider's
CallbackAuth before anything is read from the database, normalized into a
CallbackEvent and handed to the settlement path shared with polling.
"""

import json
from dataclasses import dataclass
from typing import Any, Mapping

import structlog
from sqlalchemy.exc import IntegrityError

from mediagen.models.pending_job import InvalidTransitionError
from mediagen.services.exceptions import JobNotFoundError, MalformedWebhookError
from mediagen.services.providers.base import ProviderAdapter
from mediagen.services.providers.registry import ProviderRegistry
from mediagen.services.settlement import JobOutcomeService

logger = structlog.get_logger()


@dataclass
class ReconcileResult:
    """Acknowledgement returned to the provider (always HTTP 200)."""

    status: str
    message: str
    task_id: str | None = None

    def as_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status, "message": self.message}
        if self.task_id is not None:
            body["task_id"] = self.task_id
        return body


class WebhookReconciler:
    """Turn authenticated provider callbacks into job transitions."""

    def __init__(self, registry: ProviderRegistry, outcomes: JobOutcomeService):
        self.registry = registry
        self.outcomes = outcomes

    @staticmethod
    def _decode(raw_body: bytes) -> Any:
        try:
            return json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedWebhookError(f"Invalid JSON payload: {e}") from e

    def _resolve(self, provider_param: str | None, payload: Any) -> ProviderAdapter:
        """Pick the adapter for a callback.

        Raises:
            ProviderConfigurationError: If ``provider_param`` names no known provider
            MalformedWebhookError: If the provider cannot be inferred from the payload
        """
        if provider_param:
            return self.registry.get(provider_param)

        adapter = self.registry.detect(payload)
        if adapter is None:
            raise MalformedWebhookError("Cannot determine provider from callback payload")
        logger.info("webhook.provider_detected", provider=adapter.name.value)
        return adapter

    async def handle(
        self,
        provider_param: str | None,
        query: Mapping[str, str],
        headers: Mapping[str, str],
        raw_body: bytes,
    ) -> ReconcileResult:
        """Process one callback delivery.

        Args:
            provider_param: Value of the ``provider`` query parameter, if any
            query: All query parameters (carries the token for token auth)
            headers: Request headers (carries signatures for header auth)
            raw_body: Exact request body bytes

        Returns:
            ReconcileResult with status ``ok``, ``duplicate`` or ``ignored``

        Raises:
            ProviderConfigurationError: Unknown provider (400)
            UnauthorizedWebhookError: Authentication failed (401)
            MalformedWebhookError: Bad JSON or no task id (400)
        """
        payload = self._decode(raw_body)
        adapter = self._resolve(provider_param, payload)

        adapter.callback_auth.verify(query, headers, raw_body, payload)

        event = adapter.parse_callback(payload)
        logger.info(
            "webhook.received",
            provider=adapter.name.value,
            task_id=event.task_id,
            status=event.status.value,
        )

        try:
            result = await self.outcomes.apply(
                event.task_id,
                event.status,
                result_url=event.result_url,
                error=event.error,
                alternate_task_ids=event.alternate_task_ids,
            )
        except JobNotFoundError:
            logger.warning(
                "webhook.job_not_found", provider=adapter.name.value, task_id=event.task_id
            )
            return ReconcileResult(status="ok", message="Job not found", task_id=event.task_id)
        except InvalidTransitionError as e:
            logger.warning("webhook.transition_rejected", task_id=event.task_id, error=str(e))
            return ReconcileResult(status="ignored", message=str(e), task_id=event.task_id)
        except IntegrityError:
            logger.info("webhook.duplicate", task_id=event.task_id)
            return ReconcileResult(
                status="duplicate", message="Delivery already applied", task_id=event.task_id
            )

        if not result.changed:
            return ReconcileResult(
                status="duplicate",
                message=f"Job already {result.job.status.value}",
                task_id=result.job.task_id,
            )

        logger.info(
            "webhook.applied",
            task_id=result.job.task_id,
            status=result.job.status.value,
            charged=result.charged,
            shortfall=result.shortfall,
            notified=result.notified,
        )
        return ReconcileResult(
            status="ok", message=f"Job {result.job.status.value}", task_id=result.job.task_id
        )
