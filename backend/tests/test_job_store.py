"""Pending job store tests: creation, cancellation, and the cleanup sweeps."""

from datetime import timedelta

import pytest

from mediagen.core.timezone import utcnow
from mediagen.models.pending_job import JobStatus, JobType, PendingJob, Provider
from mediagen.services.exceptions import (
    CancellationNotAllowedError,
    DuplicateTaskIdError,
    JobNotFoundError,
)
from mediagen.services.job_store import ORPHAN_JOB_MESSAGE
from mediagen.services.notifications.change_feed import JobChangeKind
from mediagen.workers.sweep_worker import sweep_once


def drain(subscription) -> list:
    changes = []
    while not subscription.queue.empty():
        changes.append(subscription.queue.get_nowait())
    return changes


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_publishes_insert(self, uow_factory, store, change_feed):
        subscription = change_feed.subscribe("user-1")
        job = PendingJob(
            user_id="user-1",
            task_id="create-1",
            provider=Provider.FALAI,
            job_type=JobType.IMAGE,
            job_metadata={"cost": "0.25"},
        )

        async with await uow_factory() as uow:
            await store.create(uow, job)

        changes = drain(subscription)
        subscription.close()
        assert [(c.kind, c.job.task_id) for c in changes] == [(JobChangeKind.INSERT, "create-1")]
        assert changes[0].job.status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_duplicate_task_id_rejected(self, uow_factory, store, create_job):
        await create_job(task_id="dup-1")
        duplicate = PendingJob(
            user_id="user-2",
            task_id="dup-1",
            provider=Provider.RUNWARE,
            job_type=JobType.IMAGE,
        )

        with pytest.raises(DuplicateTaskIdError):
            async with await uow_factory() as uow:
                await store.create(uow, duplicate)

        async with await uow_factory() as uow:
            stored = await uow.pending_jobs.get_by_task_id("dup-1")
            assert stored.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_find_by_task_id_tries_alternates(self, uow_factory, store, create_job):
        await create_job(task_id="gw-7", provider=Provider.FALAI)

        async with await uow_factory() as uow:
            found = await store.find_by_task_id(uow, "req-unknown", "gw-7")
            missing = await store.find_by_task_id(uow, "nope", "also-nope")

        assert found.task_id == "gw-7"
        assert missing is None


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_after_grace_period(self, uow_factory, store, create_job, change_feed):
        await create_job(task_id="c-1", status=JobStatus.PROCESSING, age=timedelta(minutes=3))
        subscription = change_feed.subscribe("user-1")

        async with await uow_factory() as uow:
            job = await store.cancel(uow, "user-1", "c-1")

        assert job.is_cancelled
        # Status is left for the provider to settle
        assert job.status == JobStatus.PROCESSING
        changes = drain(subscription)
        subscription.close()
        assert len(changes) == 1
        assert changes[0].job.is_cancelled

    @pytest.mark.asyncio
    async def test_cancel_inside_grace_period_refused(self, uow_factory, store, create_job):
        await create_job(task_id="c-young", age=timedelta(seconds=30))

        with pytest.raises(CancellationNotAllowedError, match="can be cancelled in"):
            async with await uow_factory() as uow:
                await store.cancel(uow, "user-1", "c-young")

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_refused(self, uow_factory, store, create_job):
        await create_job(task_id="c-done", status=JobStatus.COMPLETED, age=timedelta(minutes=5))

        with pytest.raises(CancellationNotAllowedError, match="already finished"):
            async with await uow_factory() as uow:
                await store.cancel(uow, "user-1", "c-done")

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, uow_factory, store, create_job):
        await create_job(task_id="c-twice", age=timedelta(minutes=3))
        async with await uow_factory() as uow:
            first = await store.cancel(uow, "user-1", "c-twice")
        async with await uow_factory() as uow:
            second = await store.cancel(uow, "user-1", "c-twice")

        assert second.cancelled_at == first.cancelled_at

    @pytest.mark.asyncio
    async def test_cancel_other_users_job_not_found(self, uow_factory, store, create_job):
        await create_job(user_id="owner", task_id="c-private", age=timedelta(minutes=3))

        with pytest.raises(JobNotFoundError):
            async with await uow_factory() as uow:
                await store.cancel(uow, "intruder", "c-private")


class TestSweeps:
    @pytest.mark.asyncio
    async def test_sweep_expired_deletes_old_terminal_jobs(
        self, uow_factory, store, create_job, change_feed
    ):
        now = utcnow()
        await create_job(
            task_id="old-done",
            status=JobStatus.COMPLETED,
            age=timedelta(days=10),
            completed_at=now - timedelta(days=8),
        )
        await create_job(
            task_id="new-done",
            status=JobStatus.COMPLETED,
            age=timedelta(days=2),
            completed_at=now - timedelta(days=2),
        )
        subscription = change_feed.subscribe("user-1")

        async with await uow_factory() as uow:
            deleted = await store.sweep_expired(uow, now)

        assert deleted == 1
        changes = drain(subscription)
        subscription.close()
        assert [(c.kind, c.job.task_id) for c in changes] == [(JobChangeKind.DELETE, "old-done")]
        async with await uow_factory() as uow:
            assert await uow.pending_jobs.get_by_task_id("old-done") is None
            assert await uow.pending_jobs.get_by_task_id("new-done") is not None

    @pytest.mark.asyncio
    async def test_fail_stale_after_ten_minutes(self, uow_factory, store, create_job):
        await create_job(task_id="img-running", age=timedelta(minutes=6))
        await create_job(task_id="img-stale", age=timedelta(minutes=11))
        await create_job(task_id="vid-running", job_type=JobType.VIDEO, age=timedelta(minutes=6))
        await create_job(
            task_id="vid-stale",
            job_type=JobType.VIDEO,
            status=JobStatus.PROCESSING,
            age=timedelta(minutes=11),
        )

        async with await uow_factory() as uow:
            failed = await store.fail_stale(uow)

        assert {j.task_id for j in failed} == {"img-stale", "vid-stale"}
        messages = {j.task_id: j.error_message for j in failed}
        assert messages["img-stale"] == "Generation timed out after 10 minutes"
        assert messages["vid-stale"] == "Generation timed out after 10 minutes"

    @pytest.mark.asyncio
    async def test_fail_orphans_only_touches_pending(self, uow_factory, store, create_job):
        await create_job(task_id="orphan", job_type=JobType.VIDEO, age=timedelta(minutes=40))
        await create_job(
            task_id="slow",
            job_type=JobType.VIDEO,
            status=JobStatus.PROCESSING,
            age=timedelta(minutes=40),
        )
        await create_job(task_id="fresh", job_type=JobType.VIDEO, age=timedelta(minutes=5))

        async with await uow_factory() as uow:
            failed = await store.fail_orphans(uow, "user-1")

        assert [j.task_id for j in failed] == ["orphan"]
        assert failed[0].status == JobStatus.FAILED
        assert failed[0].error_message == ORPHAN_JOB_MESSAGE

    @pytest.mark.asyncio
    async def test_sweep_once_dry_run_changes_nothing(self, uow_factory, store, create_job):
        now = utcnow()
        await create_job(
            task_id="expired",
            status=JobStatus.FAILED,
            age=timedelta(days=9),
            completed_at=now - timedelta(days=9),
        )
        await create_job(task_id="stale", age=timedelta(minutes=12))

        report = await sweep_once(uow_factory, store, now=now, dry_run=True)

        assert report.dry_run
        assert report.expired == 1
        assert report.timed_out == ["stale"]
        async with await uow_factory() as uow:
            stale = await uow.pending_jobs.get_by_task_id("stale")
            assert stale.status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_sweep_once_applies_both_sweeps(self, uow_factory, store, create_job):
        now = utcnow()
        await create_job(
            task_id="expired",
            status=JobStatus.FAILED,
            age=timedelta(days=9),
            completed_at=now - timedelta(days=9),
        )
        await create_job(task_id="stale", age=timedelta(minutes=12))

        report = await sweep_once(uow_factory, store, now=now)

        assert report.expired == 1
        assert report.timed_out == ["stale"]
        async with await uow_factory() as uow:
            assert await uow.pending_jobs.get_by_task_id("expired") is None
            stale = await uow.pending_jobs.get_by_task_id("stale")
            assert stale.status == JobStatus.FAILED
