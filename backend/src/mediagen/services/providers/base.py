"""Provider adapter contract shared by all generation providers."""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, AsyncIterator
from urllib.parse import urlencode

import httpx
import structlog

from mediagen.models.pending_job import JobStatus, JobType, Provider
from mediagen.services.exceptions import (
    PermanentSubmissionError,
    RequestValidationError,
    TransientSubmissionError,
)
from mediagen.services.providers.bindings import CallbackAuth, WebhookBinding

logger = structlog.get_logger()

MAX_PROMPT_LENGTH = 4000


@dataclass(slots=True)
class GenerationRequest:
    """Provider-agnostic description of one generation job.

    Media references are URLs of assets already uploaded to durable storage.
    """

    job_type: JobType
    model: str
    prompt: str
    cost: Decimal
    aspect_ratio: str = "1:1"
    image_url: str | None = None
    video_url: str | None = None
    duration: int | None = None
    endpoint: str | None = None
    title: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def metadata(self) -> dict[str, Any]:
        """Key-value bag persisted with the job for settlement and history."""
        data: dict[str, Any] = {
            "cost": str(self.cost),
            "prompt": self.prompt,
            "model": self.model,
            "aspect_ratio": self.aspect_ratio,
        }
        if self.title:
            data["title"] = self.title
        if self.image_url:
            data["image_url"] = self.image_url
        if self.video_url:
            data["video_url"] = self.video_url
        if self.duration is not None:
            data["duration"] = self.duration
        if self.endpoint:
            data["endpoint"] = self.endpoint
        return data


def validate_request(request: GenerationRequest) -> GenerationRequest:
    """Validate a generation request before it reaches any provider.

    Raises:
        RequestValidationError: If prompt, model or cost are unusable
    """
    if not request.prompt or not request.prompt.strip():
        raise RequestValidationError("Prompt cannot be empty")

    if len(request.prompt) > MAX_PROMPT_LENGTH:
        raise RequestValidationError(
            f"Prompt exceeds maximum length of {MAX_PROMPT_LENGTH} characters "
            f"(got {len(request.prompt)})"
        )

    if not request.model:
        raise RequestValidationError("Model identifier is required")

    if request.cost < 0:
        raise RequestValidationError(f"Cost cannot be negative (got {request.cost})")

    return request


@dataclass(slots=True)
class SubmissionResult:
    """Provider acceptance of a job."""

    provider_task_id: str
    client_task_id: str
    id_source: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProviderStatus:
    """Normalized job status reported by a provider (poll response or callback)."""

    status: JobStatus
    result_url: str | None = None
    error: str | None = None


@dataclass(slots=True)
class CallbackEvent:
    """Normalized webhook callback.

    ``alternate_task_ids`` carries secondary identifiers (e.g. a gateway id) tried
    when ``task_id`` matches no job.
    """

    task_id: str
    status: JobStatus
    result_url: str | None = None
    error: str | None = None
    alternate_task_ids: tuple[str, ...] = ()


class ProviderAdapter(ABC):
    """Translate generation requests to one provider's wire format.

    Subclasses set ``name`` and ``webhook_binding`` and implement ``submit`` and
    ``parse_callback``; polling-capable providers also implement ``poll_status``.
    """

    name: Provider
    webhook_binding: WebhookBinding | None = None
    supports_polling: bool = False

    def __init__(
        self,
        api_key: str,
        callback_auth: CallbackAuth,
        webhook_base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ):
        """Initialize adapter.

        Args:
            api_key: Provider API key
            callback_auth: Authentication scheme for this provider's callbacks
            webhook_base_url: Public URL of the webhook receiver; None disables webhooks
            http_client: Shared client (tests inject one with a mock transport)
            timeout: Per-request timeout when no client is injected
        """
        self.api_key = api_key
        self.callback_auth = callback_auth
        self.webhook_base_url = webhook_base_url
        self.http_client = http_client
        self.timeout = timeout

    @property
    def uses_webhook(self) -> bool:
        return self.webhook_binding is not None and bool(self.webhook_base_url)

    def callback_url(self) -> str:
        """Webhook URL for this provider: ``<base>?provider=<name>[&token=<secret>]``."""
        params = {"provider": self.name.value, **self.callback_auth.callback_params()}
        separator = "&" if "?" in self.webhook_base_url else "?"
        return f"{self.webhook_base_url}{separator}{urlencode(params)}"

    def bind_webhook(self, endpoint: str, body: Any) -> tuple[str, Any]:
        if not self.uses_webhook:
            return endpoint, body
        return self.webhook_binding.bind(endpoint, body, self.callback_url())

    @asynccontextmanager
    async def client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.http_client is not None:
            yield self.http_client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue a request and classify failures as submission errors.

        Raises:
            TransientSubmissionError: Network failure, timeout, 429 or 5xx
            PermanentSubmissionError: Any other non-2xx status
        """
        try:
            async with self.client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientSubmissionError(
                f"{self.name.value} request timed out: {e}", provider=self.name.value
            ) from e
        except httpx.HTTPError as e:
            raise TransientSubmissionError(
                f"{self.name.value} network error: {e}", provider=self.name.value
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSubmissionError(
                f"{self.name.value} unavailable ({response.status_code}): {response.text[:500]}",
                provider=self.name.value,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise PermanentSubmissionError(
                f"{self.name.value} rejected request ({response.status_code}): "
                f"{response.text[:500]}",
                provider=self.name.value,
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def json_or_empty(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {}

    @abstractmethod
    async def submit(self, request: GenerationRequest) -> SubmissionResult:
        """Submit a job and return the provider's task identifier.

        Raises:
            SubmissionError: Provider rejected the request or the network failed
        """

    @abstractmethod
    def parse_callback(self, payload: Any) -> CallbackEvent:
        """Normalize a webhook payload.

        Raises:
            MalformedWebhookError: If no task identifier can be found
        """

    @abstractmethod
    def matches_callback(self, payload: Any) -> bool:
        """Whether an unlabelled callback payload looks like this provider's."""

    async def poll_status(self, task_id: str) -> ProviderStatus:
        """Fetch the current status of a job (polling-capable providers only)."""
        raise NotImplementedError(f"{self.name.value} does not support status polling")

    async def cancel(self, task_id: str, job_metadata: dict[str, Any]) -> bool:
        """Best-effort cancellation; returns True if the provider accepted it."""
        return False
