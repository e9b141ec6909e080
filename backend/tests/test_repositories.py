"""Repository layer tests for the mediagen backend.

Tests focus on the conditional writes everything else relies on:
- Compare-and-set status updates
- Single-shot notification and cancellation flags
- Conditional balance decrement
- Account upsert (INSERT ... ON CONFLICT DO NOTHING)
- Sweep queries (retention, stale, orphans)

Simple CRUD operations are not tested (trust SQLAlchemy).
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from mediagen.core.timezone import utcnow
from mediagen.models.pending_job import JobStatus, JobType


@pytest.mark.asyncio
async def test_update_if_status_is_compare_and_set(uow_factory, create_job):
    """Scenario:
    1. Job is pending
    2. First update expecting pending succeeds
    3. Second update expecting pending finds the row moved on and does nothing
    """
    job = await create_job(task_id="cas-1")

    async with await uow_factory() as uow:
        first = await uow.pending_jobs.update_if_status(
            job.id, [JobStatus.PENDING], {"status": JobStatus.PROCESSING}
        )
        second = await uow.pending_jobs.update_if_status(
            job.id, [JobStatus.PENDING], {"status": JobStatus.FAILED}
        )

    assert first is True
    assert second is False

    async with await uow_factory() as uow:
        stored = await uow.pending_jobs.get_by_id(job.id)
        assert stored.status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_mark_notification_sent_only_once(uow_factory, create_job):
    job = await create_job(task_id="notify-once", status=JobStatus.COMPLETED)

    async with await uow_factory() as uow:
        assert await uow.pending_jobs.mark_notification_sent(job.id, utcnow()) is True
        assert await uow.pending_jobs.mark_notification_sent(job.id, utcnow()) is False


@pytest.mark.asyncio
async def test_cleared_notification_can_be_claimed_again(uow_factory, create_job):
    job = await create_job(task_id="notify-retry", status=JobStatus.COMPLETED)

    async with await uow_factory() as uow:
        assert await uow.pending_jobs.mark_notification_sent(job.id, utcnow()) is True
        await uow.pending_jobs.clear_notification_sent(job.id, utcnow())
        assert await uow.pending_jobs.mark_notification_sent(job.id, utcnow()) is True


@pytest.mark.asyncio
async def test_mark_cancelled_skips_terminal_jobs(uow_factory, create_job):
    running = await create_job(task_id="cancel-running", status=JobStatus.PROCESSING)
    finished = await create_job(task_id="cancel-finished", status=JobStatus.FAILED)

    async with await uow_factory() as uow:
        assert await uow.pending_jobs.mark_cancelled(running.id, utcnow()) is True
        assert await uow.pending_jobs.mark_cancelled(running.id, utcnow()) is False
        assert await uow.pending_jobs.mark_cancelled(finished.id, utcnow()) is False


@pytest.mark.asyncio
async def test_get_for_user_hides_other_users_jobs(uow_factory, create_job):
    await create_job(user_id="owner", task_id="private-1")

    async with await uow_factory() as uow:
        assert await uow.pending_jobs.get_for_user("owner", "private-1") is not None
        assert await uow.pending_jobs.get_for_user("intruder", "private-1") is None


@pytest.mark.asyncio
async def test_list_for_user_newest_first_with_filter(uow_factory, create_job):
    await create_job(task_id="old", age=timedelta(minutes=3))
    await create_job(task_id="mid", age=timedelta(minutes=2), status=JobStatus.COMPLETED)
    await create_job(task_id="new", age=timedelta(minutes=1))
    await create_job(user_id="someone-else", task_id="foreign")

    async with await uow_factory() as uow:
        all_jobs = await uow.pending_jobs.list_for_user("user-1")
        pending = await uow.pending_jobs.list_non_terminal_for_user("user-1")

    assert [j.task_id for j in all_jobs] == ["new", "mid", "old"]
    assert {j.task_id for j in pending} == {"new", "old"}


@pytest.mark.asyncio
async def test_sweep_queries(uow_factory, create_job):
    now = utcnow()
    await create_job(
        task_id="expired",
        status=JobStatus.COMPLETED,
        age=timedelta(days=9),
        completed_at=now - timedelta(days=8),
    )
    await create_job(
        task_id="recent-terminal",
        status=JobStatus.FAILED,
        age=timedelta(days=1),
        completed_at=now - timedelta(days=1),
    )
    await create_job(task_id="stale-image", age=timedelta(minutes=6))
    await create_job(task_id="fresh-video", job_type=JobType.VIDEO, age=timedelta(minutes=6))
    await create_job(task_id="orphan", age=timedelta(minutes=45))
    await create_job(task_id="old-processing", status=JobStatus.PROCESSING, age=timedelta(hours=1))

    async with await uow_factory() as uow:
        expired = await uow.pending_jobs.list_terminal_completed_before(now - timedelta(days=7))
        stale_images = await uow.pending_jobs.list_stale(
            JobType.IMAGE, now - timedelta(minutes=5)
        )
        stale_videos = await uow.pending_jobs.list_stale(
            JobType.VIDEO, now - timedelta(minutes=10)
        )
        orphans = await uow.pending_jobs.list_orphans("user-1", now - timedelta(minutes=30))

    assert [j.task_id for j in expired] == ["expired"]
    assert {j.task_id for j in stale_images} == {"stale-image", "orphan", "old-processing"}
    assert stale_videos == []
    assert [j.task_id for j in orphans] == ["orphan"]


@pytest.mark.asyncio
async def test_delete_by_ids(uow_factory, create_job):
    a = await create_job(task_id="del-a")
    b = await create_job(task_id="del-b")
    await create_job(task_id="keep")

    async with await uow_factory() as uow:
        deleted = await uow.pending_jobs.delete_by_ids([a.id, b.id])
        assert await uow.pending_jobs.delete_by_ids([]) == 0

    assert deleted == 2
    async with await uow_factory() as uow:
        remaining = await uow.pending_jobs.list_for_user("user-1")
        assert [j.task_id for j in remaining] == ["keep"]


@pytest.mark.asyncio
async def test_ensure_account_is_idempotent(uow_factory):
    async with await uow_factory() as uow:
        await uow.credits.ensure_account("user-1", utcnow())
        await uow.credits.increment_balance("user-1", Decimal("1.00"), utcnow())
        await uow.credits.ensure_account("user-1", utcnow())

    async with await uow_factory() as uow:
        account = await uow.credits.get_account("user-1")
        assert account.balance == Decimal("1.00")


@pytest.mark.asyncio
async def test_decrement_balance_if_sufficient(uow_factory):
    """Scenario:
    1. Balance 0.50
    2. Decrement 0.75 is refused, balance unchanged
    3. Decrement 0.50 succeeds, balance reaches zero (never negative)
    """
    async with await uow_factory() as uow:
        await uow.credits.ensure_account("user-1", utcnow())
        await uow.credits.increment_balance("user-1", Decimal("0.50"), utcnow())

    async with await uow_factory() as uow:
        refused = await uow.credits.decrement_balance_if_sufficient(
            "user-1", Decimal("0.75"), utcnow()
        )
        accepted = await uow.credits.decrement_balance_if_sufficient(
            "user-1", Decimal("0.50"), utcnow()
        )

    assert refused is False
    assert accepted is True
    async with await uow_factory() as uow:
        account = await uow.credits.get_account("user-1")
        assert account.balance == Decimal("0")


@pytest.mark.asyncio
async def test_decrement_without_account_is_refused(uow_factory):
    async with await uow_factory() as uow:
        assert (
            await uow.credits.decrement_balance_if_sufficient("nobody", Decimal("0.25"), utcnow())
            is False
        )
