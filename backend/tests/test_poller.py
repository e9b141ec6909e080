"""Fallback polling tests.

WaveSpeed status responses are scripted through httpx.MockTransport; the poller's
sleep is replaced with a recorder so tests run instantly.
"""

from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from mediagen.models.pending_job import JobStatus, JobType, PendingJobRead, Provider
from mediagen.services.exceptions import PollingTimeoutError, ProviderJobFailedError
from mediagen.services.notifications.poller import JobPoller
from mediagen.services.providers.bindings import SignatureHeaderAuth
from mediagen.services.providers.registry import ProviderRegistry
from mediagen.services.providers.wavespeed import WaveSpeedAdapter
from mediagen.services.settlement import JobOutcomeService


class ScriptedStatus:
    """Serve queued WaveSpeed responses; the last one repeats."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(
            template.status_code, headers=template.headers, content=template.content
        )


def prediction(status: str, outputs=None, error=None) -> httpx.Response:
    data = {"id": "pred-1", "status": status, "outputs": outputs or []}
    if error:
        data["error"] = error
    return httpx.Response(200, json={"code": 200, "data": data})


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def script() -> ScriptedStatus:
    return ScriptedStatus(prediction("processing"))


@pytest_asyncio.fixture
async def poller(uow_factory, store, ledger, script, sleeps):
    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async with httpx.AsyncClient(transport=httpx.MockTransport(script)) as client:
        registry = ProviderRegistry(
            [WaveSpeedAdapter("ws-key", SignatureHeaderAuth("whsec"), None, client)]
        )
        outcomes = JobOutcomeService(uow_factory, store, ledger)
        yield JobPoller(
            registry,
            outcomes,
            interval_seconds=5.0,
            max_attempts_image=3,
            max_attempts_video=4,
            sleep=record_sleep,
        )


async def wavespeed_job(create_job, **overrides) -> PendingJobRead:
    fields = {"task_id": "pred-1", "provider": Provider.WAVESPEED, "cost": "0.50"}
    fields.update(overrides)
    return PendingJobRead.model_validate(await create_job(**fields))


async def stored_status(uow_factory, task_id="pred-1"):
    async with await uow_factory() as uow:
        return await uow.pending_jobs.get_by_task_id(task_id)


class TestPollUntilTerminal:
    @pytest.mark.asyncio
    async def test_returns_first_terminal_status(self, poller, script, sleeps):
        script.responses = [
            prediction("created"),
            prediction("processing"),
            prediction("completed", outputs=["https://cdn.test/o.png"]),
        ]
        adapter = poller.registry.get(Provider.WAVESPEED)

        result = await poller.poll_until_terminal(adapter, "pred-1", JobType.IMAGE)

        assert result.status == JobStatus.COMPLETED
        assert result.result_url == "https://cdn.test/o.png"
        assert script.calls == 3
        assert sleeps == [5.0, 5.0]

    @pytest.mark.asyncio
    async def test_budget_depends_on_job_type(self, poller, script, sleeps):
        adapter = poller.registry.get(Provider.WAVESPEED)

        with pytest.raises(PollingTimeoutError) as exc_info:
            await poller.poll_until_terminal(adapter, "pred-1", JobType.VIDEO)

        assert exc_info.value.attempts == 4
        assert script.calls == 4
        # No sleep after the final attempt
        assert len(sleeps) == 3

    @pytest.mark.asyncio
    async def test_transient_errors_count_as_attempts(self, poller, script):
        script.responses = [
            httpx.Response(503),
            httpx.Response(429),
            prediction("completed", outputs=["https://cdn.test/o.png"]),
        ]
        adapter = poller.registry.get(Provider.WAVESPEED)

        result = await poller.poll_until_terminal(adapter, "pred-1", JobType.IMAGE)

        assert result.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_processing_reported_once(self, poller, script):
        script.responses = [
            prediction("processing"),
            prediction("processing"),
            prediction("failed", error="bad prompt"),
        ]
        adapter = poller.registry.get(Provider.WAVESPEED)
        reported = []

        async def on_processing():
            reported.append(True)

        result = await poller.poll_until_terminal(
            adapter, "pred-1", JobType.IMAGE, on_processing=on_processing
        )

        assert result.status == JobStatus.FAILED
        assert reported == [True]


class TestDrive:
    @pytest.mark.asyncio
    async def test_completion_is_settled(
        self, poller, script, uow_factory, ledger, fund, create_job
    ):
        await fund("user-1", "1.00")
        job = await wavespeed_job(create_job)
        script.responses = [
            prediction("processing"),
            prediction("completed", outputs=["https://cdn.test/o.png"]),
        ]

        result = await poller.drive(job)

        assert result.changed
        assert result.charged
        stored = await stored_status(uow_factory)
        assert stored.status == JobStatus.COMPLETED
        async with await uow_factory() as uow:
            assert await ledger.get_balance(uow, "user-1") == Decimal("0.50")

    @pytest.mark.asyncio
    async def test_timeout_fails_job_without_charge(
        self, poller, uow_factory, ledger, fund, create_job
    ):
        await fund("user-1", "1.00")
        job = await wavespeed_job(create_job)

        result = await poller.drive(job)

        assert result.changed
        assert not result.charged
        stored = await stored_status(uow_factory)
        assert stored.status == JobStatus.FAILED
        assert "Polling timed out after 3 attempts" in stored.error_message
        async with await uow_factory() as uow:
            assert await ledger.get_balance(uow, "user-1") == Decimal("1.00")

    @pytest.mark.asyncio
    async def test_unknown_prediction_fails_job(self, poller, script, uow_factory, create_job):
        job = await wavespeed_job(create_job)
        script.responses = [httpx.Response(404, json={"message": "prediction not found"})]

        await poller.drive(job)

        stored = await stored_status(uow_factory)
        assert stored.status == JobStatus.FAILED
        assert "404" in stored.error_message

    @pytest.mark.asyncio
    async def test_late_completion_after_timeout_is_not_charged(
        self, poller, script, uow_factory, store, ledger, fund, create_job
    ):
        await fund("user-1", "1.00")
        job = await wavespeed_job(create_job)
        async with await uow_factory() as uow:
            await store.transition(
                uow, "pred-1", JobStatus.FAILED, error_message="Generation timed out"
            )
        script.responses = [prediction("completed", outputs=["https://cdn.test/o.png"])]

        result = await poller.drive(job)

        assert not result.changed
        assert result.job.status == JobStatus.FAILED
        async with await uow_factory() as uow:
            assert await ledger.get_balance(uow, "user-1") == Decimal("1.00")

    @pytest.mark.asyncio
    async def test_processing_report_on_terminal_job_stops_quietly(
        self, poller, script, uow_factory, create_job
    ):
        job = await wavespeed_job(
            create_job, status=JobStatus.COMPLETED, result_url="https://cdn.test/o.png"
        )
        script.responses = [prediction("processing")]

        assert await poller.drive(job) is None
        stored = await stored_status(uow_factory)
        assert stored.status == JobStatus.COMPLETED


class TestWaitForResult:
    @pytest.mark.asyncio
    async def test_returns_output_url(self, poller, script):
        script.responses = [prediction("completed", outputs=["https://cdn.test/o.png"])]
        adapter = poller.registry.get(Provider.WAVESPEED)

        url = await poller.wait_for_result(adapter, "pred-1", JobType.IMAGE)

        assert url == "https://cdn.test/o.png"

    @pytest.mark.asyncio
    async def test_provider_failure_raises(self, poller, script):
        script.responses = [prediction("failed", error="bad prompt")]
        adapter = poller.registry.get(Provider.WAVESPEED)

        with pytest.raises(ProviderJobFailedError, match="bad prompt"):
            await poller.wait_for_result(adapter, "pred-1", JobType.IMAGE)
