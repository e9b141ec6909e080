"""Provider adapter tests.

HTTP traffic goes through httpx.MockTransport; each test inspects the request the
adapter built and feeds back a canned provider response.
"""

import json
from decimal import Decimal

import httpx
import pytest

from mediagen.core.config import Settings
from mediagen.models.pending_job import JobStatus, JobType, Provider
from mediagen.services.exceptions import (
    MalformedWebhookError,
    PermanentSubmissionError,
    ProviderConfigurationError,
    TransientSubmissionError,
)
from mediagen.services.providers.base import GenerationRequest
from mediagen.services.providers.bindings import SignatureHeaderAuth, TokenAuth
from mediagen.services.providers.falai import FalAIAdapter
from mediagen.services.providers.identifiers import CLIENT_SOURCE
from mediagen.services.providers.registry import build_provider_registry
from mediagen.services.providers.runware import RunwareAdapter, size_for_aspect_ratio
from mediagen.services.providers.wavespeed import WaveSpeedAdapter

WEBHOOK_BASE = "https://api.example.com/webhooks"


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def image_request(**overrides) -> GenerationRequest:
    fields = {
        "job_type": JobType.IMAGE,
        "model": "runware:101@1",
        "prompt": "a lighthouse at dusk",
        "cost": Decimal("0.50"),
        "aspect_ratio": "16:9",
    }
    fields.update(overrides)
    return GenerationRequest(**fields)


class TestRunwareAdapter:
    @pytest.mark.asyncio
    async def test_submit_embeds_webhook_in_task(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            task_uuid = captured["body"][1]["taskUUID"]
            return httpx.Response(200, json={"data": [{"taskUUID": task_uuid}]})

        async with mock_client(handler) as client:
            adapter = RunwareAdapter("rw-key", TokenAuth("s3cret"), WEBHOOK_BASE, client)
            result = await adapter.submit(image_request())

        auth_task, task = captured["body"]
        assert auth_task == {"taskType": "authentication", "apiKey": "rw-key"}
        assert task["taskType"] == "imageInference"
        assert task["positivePrompt"] == "a lighthouse at dusk"
        assert (task["width"], task["height"]) == (1344, 768)
        assert task["webhookURL"] == f"{WEBHOOK_BASE}?provider=runware&token=s3cret"
        assert result.provider_task_id == task["taskUUID"]
        assert result.id_source == "data.0.taskUUID"

    @pytest.mark.asyncio
    async def test_submit_video_task(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": []})

        async with mock_client(handler) as client:
            adapter = RunwareAdapter("rw-key", TokenAuth("s3cret"), None, client)
            result = await adapter.submit(
                image_request(
                    job_type=JobType.VIDEO, duration=5, image_url="https://cdn.test/in.png"
                )
            )

        task = captured["body"][1]
        assert task["taskType"] == "videoInference"
        assert task["deliveryMethod"] == "async"
        assert task["duration"] == 5
        assert task["frameImages"] == [{"inputImage": "https://cdn.test/in.png"}]
        assert "webhookURL" not in task
        assert result.id_source == CLIENT_SOURCE
        assert result.provider_task_id == result.client_task_id

    @pytest.mark.asyncio
    async def test_task_level_errors_are_permanent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"errors": [{"message": "Invalid model"}]})

        async with mock_client(handler) as client:
            adapter = RunwareAdapter("rw-key", TokenAuth("s3cret"), WEBHOOK_BASE, client)
            with pytest.raises(PermanentSubmissionError, match="Invalid model"):
                await adapter.submit(image_request())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_retryable_statuses_are_transient(self, status_code):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, text="unavailable")

        async with mock_client(handler) as client:
            adapter = RunwareAdapter("rw-key", TokenAuth("s3cret"), WEBHOOK_BASE, client)
            with pytest.raises(TransientSubmissionError) as exc_info:
                await adapter.submit(image_request())

        assert exc_info.value.status_code == status_code
        assert exc_info.value.provider == "runware"

    @pytest.mark.asyncio
    async def test_client_errors_are_permanent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": "bad key"})

        async with mock_client(handler) as client:
            adapter = RunwareAdapter("rw-key", TokenAuth("s3cret"), WEBHOOK_BASE, client)
            with pytest.raises(PermanentSubmissionError):
                await adapter.submit(image_request())

    @pytest.mark.asyncio
    async def test_network_failure_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with mock_client(handler) as client:
            adapter = RunwareAdapter("rw-key", TokenAuth("s3cret"), WEBHOOK_BASE, client)
            with pytest.raises(TransientSubmissionError, match="network error"):
                await adapter.submit(image_request())

    def test_unknown_aspect_ratio_defaults_to_square(self):
        assert size_for_aspect_ratio("7:5") == (1024, 1024)

    @pytest.mark.parametrize(
        "payload,status,url,error",
        [
            (
                {"data": [{"taskUUID": "t-1", "imageURL": "https://cdn.test/a.png"}]},
                JobStatus.COMPLETED,
                "https://cdn.test/a.png",
                None,
            ),
            (
                [{"taskUUID": "t-1", "videoURL": "https://cdn.test/a.mp4"}],
                JobStatus.COMPLETED,
                "https://cdn.test/a.mp4",
                None,
            ),
            (
                {"data": [{"taskUUID": "t-1"}], "error": "Content moderation"},
                JobStatus.FAILED,
                None,
                "Content moderation",
            ),
            ({"taskUUID": "t-1", "status": "failed"}, JobStatus.FAILED, None, "Generation failed"),
            ({"taskUUID": "t-1", "status": "processing"}, JobStatus.PROCESSING, None, None),
        ],
    )
    def test_parse_callback(self, payload, status, url, error):
        adapter = RunwareAdapter("rw-key", TokenAuth("s3cret"))

        event = adapter.parse_callback(payload)

        assert event.task_id == "t-1"
        assert event.status == status
        assert event.result_url == url
        assert event.error == error

    def test_callback_without_task_id_is_malformed(self):
        adapter = RunwareAdapter("rw-key", TokenAuth("s3cret"))

        with pytest.raises(MalformedWebhookError):
            adapter.parse_callback({"data": [{"imageURL": "https://cdn.test/a.png"}]})


class TestFalAIAdapter:
    @pytest.mark.asyncio
    async def test_submit_uses_query_param_webhook(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(
                200,
                json={
                    "request_id": "req-1",
                    "status_url": "https://queue.fal.run/fal-ai/kling/requests/req-1/status",
                    "cancel_url": "https://queue.fal.run/fal-ai/kling/requests/req-1/cancel",
                },
            )

        async with mock_client(handler) as client:
            adapter = FalAIAdapter("fal-key", TokenAuth("s3cret"), WEBHOOK_BASE, client)
            result = await adapter.submit(
                image_request(
                    job_type=JobType.VIDEO,
                    model="fal-ai/kling",
                    duration=5,
                    image_url="https://cdn.test/in.png",
                )
            )

        request = captured["request"]
        assert request.url.path == "/fal-ai/kling"
        assert request.headers["Authorization"] == "Key fal-key"
        assert request.url.params["fal_webhook"] == (
            f"{WEBHOOK_BASE}?provider=falai&token=s3cret"
        )
        body = json.loads(request.content)
        assert body["duration"] == "5"
        assert body["image_url"] == "https://cdn.test/in.png"
        assert result.provider_task_id == "req-1"
        assert result.metadata["cancel_url"].endswith("/req-1/cancel")

    @pytest.mark.asyncio
    async def test_missing_request_id_falls_back_to_client_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="accepted")

        async with mock_client(handler) as client:
            adapter = FalAIAdapter("fal-key", TokenAuth("s3cret"), WEBHOOK_BASE, client)
            result = await adapter.submit(image_request(model="fal-ai/flux"))

        assert result.id_source == CLIENT_SOURCE
        assert result.provider_task_id == result.client_task_id

    def test_parse_ok_callback_with_gateway_id(self):
        adapter = FalAIAdapter("fal-key", TokenAuth("s3cret"))

        event = adapter.parse_callback(
            {
                "request_id": "req-1",
                "gateway_request_id": "gw-1",
                "status": "OK",
                "payload": {"images": [{"url": "https://fal.media/a.png"}]},
            }
        )

        assert event.task_id == "req-1"
        assert event.alternate_task_ids == ("gw-1",)
        assert event.status == JobStatus.COMPLETED
        assert event.result_url == "https://fal.media/a.png"

    def test_ok_without_output_is_failed(self):
        adapter = FalAIAdapter("fal-key", TokenAuth("s3cret"))

        event = adapter.parse_callback({"request_id": "req-1", "status": "OK", "payload": {}})

        assert event.status == JobStatus.FAILED
        assert "without an output URL" in event.error

    def test_error_detail_is_serialized(self):
        adapter = FalAIAdapter("fal-key", TokenAuth("s3cret"))

        event = adapter.parse_callback(
            {
                "request_id": "req-1",
                "status": "ERROR",
                "payload": {"detail": [{"msg": "image too small"}]},
            }
        )

        assert event.status == JobStatus.FAILED
        assert "image too small" in event.error

    def test_callback_without_id_is_malformed(self):
        adapter = FalAIAdapter("fal-key", TokenAuth("s3cret"))

        with pytest.raises(MalformedWebhookError):
            adapter.parse_callback({"status": "OK"})

    @pytest.mark.asyncio
    async def test_cancel_uses_cancel_url(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, str(request.url)))
            return httpx.Response(200, json={"status": "CANCELLATION_REQUESTED"})

        async with mock_client(handler) as client:
            adapter = FalAIAdapter("fal-key", TokenAuth("s3cret"), WEBHOOK_BASE, client)
            accepted = await adapter.cancel("req-1", {"endpoint": "fal-ai/kling"})

        assert accepted is True
        assert seen == [("PUT", "https://queue.fal.run/fal-ai/kling/requests/req-1/cancel")]

    @pytest.mark.asyncio
    async def test_cancel_failure_is_reported_not_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"detail": "already running"})

        async with mock_client(handler) as client:
            adapter = FalAIAdapter("fal-key", TokenAuth("s3cret"), WEBHOOK_BASE, client)
            accepted = await adapter.cancel(
                "req-1", {"cancel_url": "https://queue.fal.run/x/requests/req-1/cancel"}
            )

        assert accepted is False


class TestWaveSpeedAdapter:
    @pytest.mark.asyncio
    async def test_submit_without_webhook(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(200, json={"code": 200, "data": {"id": "pred-1"}})

        async with mock_client(handler) as client:
            adapter = WaveSpeedAdapter("ws-key", SignatureHeaderAuth("whsec"), None, client)
            result = await adapter.submit(image_request(model="bytedance/seedream-v4"))

        request = captured["request"]
        assert "webhook" not in request.url.params
        assert request.headers["Authorization"] == "Bearer ws-key"
        assert json.loads(request.content)["enable_sync_mode"] is False
        assert result.provider_task_id == "pred-1"
        assert not adapter.uses_webhook

    @pytest.mark.asyncio
    async def test_submit_with_webhook_appends_param(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(200, json={"data": {"id": "pred-1"}})

        async with mock_client(handler) as client:
            adapter = WaveSpeedAdapter(
                "ws-key", SignatureHeaderAuth("whsec"), WEBHOOK_BASE, client
            )
            await adapter.submit(image_request(model="bytedance/seedream-v4"))

        assert captured["request"].url.params["webhook"] == f"{WEBHOOK_BASE}?provider=wavespeed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "data,status,url",
        [
            ({"status": "created"}, JobStatus.PENDING, None),
            ({"status": "processing"}, JobStatus.PROCESSING, None),
            (
                {"status": "completed", "outputs": ["https://cdn.test/o.png"]},
                JobStatus.COMPLETED,
                "https://cdn.test/o.png",
            ),
            ({"status": "completed", "outputs": []}, JobStatus.FAILED, None),
            ({"status": "failed", "error": "bad prompt"}, JobStatus.FAILED, None),
        ],
    )
    async def test_poll_status(self, data, status, url):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v3/predictions/pred-1/result"
            return httpx.Response(200, json={"code": 200, "data": {"id": "pred-1", **data}})

        async with mock_client(handler) as client:
            adapter = WaveSpeedAdapter("ws-key", SignatureHeaderAuth("whsec"), None, client)
            result = await adapter.poll_status("pred-1")

        assert result.status == status
        assert result.result_url == url

    def test_parse_callback(self):
        adapter = WaveSpeedAdapter("ws-key", SignatureHeaderAuth("whsec"))

        event = adapter.parse_callback(
            {"id": "pred-1", "status": "failed", "error": "NSFW content detected"}
        )

        assert event.task_id == "pred-1"
        assert event.status == JobStatus.FAILED
        assert event.error == "NSFW content detected"


class TestProviderRegistry:
    @pytest.fixture
    def registry(self):
        settings = Settings(
            APP_ENV="test",
            WEBHOOK_BASE_URL=WEBHOOK_BASE,
            WEBHOOK_SECRET="s3cret",
            WAVESPEED_WEBHOOK_SECRET="whsec",
        )
        return build_provider_registry(settings)

    def test_get_by_name(self, registry):
        assert registry.get("falai").name == Provider.FALAI
        assert registry.get(Provider.WAVESPEED).name == Provider.WAVESPEED

    def test_unknown_provider(self, registry):
        with pytest.raises(ProviderConfigurationError, match="Unknown provider"):
            registry.get("midjourney")

    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({"request_id": "req-1", "status": "OK", "payload": {}}, Provider.FALAI),
            ({"data": [{"taskUUID": "t-1", "imageURL": "u"}]}, Provider.RUNWARE),
            ({"id": "pred-1", "status": "completed", "outputs": ["u"]}, Provider.WAVESPEED),
        ],
    )
    def test_detect(self, registry, payload, expected):
        assert registry.detect(payload).name == expected

    def test_detect_unknown_shape(self, registry):
        assert registry.detect({"hello": "world"}) is None
