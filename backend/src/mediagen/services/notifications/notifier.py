"""Job status notifier.

Mirrors one user's pending jobs into UI notification records. Changes arrive from
the in-process change feed; jobs of polling-capable providers that go quiet are
driven by the fallback poller, whose outcomes come back through the same feed.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

import structlog

from mediagen.core.timezone import utcnow
from mediagen.models.pending_job import (
    NON_TERMINAL_STATUSES,
    JobStatus,
    JobType,
    PendingJobRead,
)
from mediagen.services.exceptions import ServiceError
from mediagen.services.job_store import PendingJobStore
from mediagen.services.notifications.change_feed import (
    ChangeFeed,
    JobChange,
    JobChangeKind,
    Subscription,
)
from mediagen.services.notifications.messages import (
    completed_message,
    default_title,
    estimate_progress,
    progress_message,
)
from mediagen.services.notifications.poller import JobPoller
from mediagen.services.providers.registry import ProviderRegistry

logger = structlog.get_logger()

CompletionHandler = Callable[[PendingJobRead], Awaitable[None] | None]


class NotificationState(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    DISMISSED = "dismissed"


@dataclass
class Notification:
    """UI record for one job."""

    task_id: str
    job_type: JobType
    title: str
    message: str
    progress: float = 0.0
    state: NotificationState = NotificationState.IN_PROGRESS
    thumbnail_url: str | None = None
    error_message: str | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "task_id": self.task_id,
            "job_type": self.job_type.value,
            "title": self.title,
            "message": self.message,
            "progress": self.progress,
            "state": self.state.value,
            "thumbnail_url": self.thumbnail_url,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
        }


class JobStatusNotifier:
    """Realtime view of one user's jobs.

    Lifecycle: ``start_listening(user_id)`` then ``stop_listening()``. Starting for
    the user already being listened to is a no-op; starting for another user
    stops the current subscription first.
    """

    def __init__(
        self,
        uow_factory: Callable,
        change_feed: ChangeFeed,
        store: PendingJobStore,
        registry: ProviderRegistry,
        poller: JobPoller,
        heartbeat_seconds: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.uow_factory = uow_factory
        self.change_feed = change_feed
        self.store = store
        self.registry = registry
        self.poller = poller
        self.heartbeat_seconds = heartbeat_seconds
        self.clock = clock

        self.user_id: str | None = None
        self.notifications: dict[str, Notification] = {}
        self.watched: dict[str, PendingJobRead] = {}
        self.last_event_at: dict[str, datetime] = {}
        self._dismissed: set[str] = set()
        self._completion_handlers: dict[str, list[CompletionHandler]] = {}
        self._completed: set[str] = set()
        self._polling: dict[str, asyncio.Task] = {}
        self._subscription: Subscription | None = None
        self._listen_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def is_listening(self) -> bool:
        return self._subscription is not None

    async def start_listening(self, user_id: str) -> None:
        """Subscribe to ``user_id``'s job changes and load their in-flight jobs.

        Orphaned jobs (never picked up by the provider) are failed first.
        """
        if self.is_listening and self.user_id == user_id:
            return
        if self.is_listening:
            await self.stop_listening()

        self.user_id = user_id
        # Subscribe before loading so no change committed in between is missed
        self._subscription = self.change_feed.subscribe(user_id)
        try:
            async with await self.uow_factory() as uow:
                await self.store.fail_orphans(uow, user_id, self.clock())
            async with await self.uow_factory() as uow:
                jobs = await self.store.list_for_user(uow, user_id, NON_TERMINAL_STATUSES)
                snapshots = [PendingJobRead.model_validate(job) for job in jobs]
        except BaseException:
            await self.stop_listening()
            raise

        for job in snapshots:
            if job.is_cancelled:
                self._dismissed.add(job.task_id)
                self.watched[job.task_id] = job
            else:
                self._track(job)

        self._listen_task = asyncio.create_task(self._listen())
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info("notifier.started", user_id=user_id, watched=len(self.watched))

    async def stop_listening(self) -> None:
        """Release the subscription, heartbeat and any running polls."""
        tasks = [t for t in (self._listen_task, self._heartbeat_task) if t is not None]
        tasks.extend(self._polling.values())
        try:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            if self._subscription is not None:
                self._subscription.close()
            user_id = self.user_id
            self._subscription = None
            self._listen_task = None
            self._heartbeat_task = None
            self._polling.clear()
            self.user_id = None
            self.notifications.clear()
            self.watched.clear()
            self.last_event_at.clear()
            self._dismissed.clear()
            self._completion_handlers.clear()
            self._completed.clear()
            if user_id is not None:
                logger.info("notifier.stopped", user_id=user_id)

    def on_completion(self, task_id: str, handler: CompletionHandler) -> None:
        """Register a callback fired once when ``task_id`` reaches a terminal status."""
        self._completion_handlers.setdefault(task_id, []).append(handler)

    def list_notifications(self) -> list[Notification]:
        visible = [
            n for n in self.notifications.values() if n.state != NotificationState.DISMISSED
        ]
        return sorted(visible, key=lambda n: n.created_at, reverse=True)

    def dismiss(self, task_id: str) -> bool:
        """Hide a notification; later changes for the task never resurface it."""
        self._dismissed.add(task_id)
        notification = self.notifications.get(task_id)
        if notification is None:
            return False
        notification.state = NotificationState.DISMISSED
        return True

    async def cancel(self, task_id: str) -> PendingJobRead:
        """Cancel a job on the user's behalf.

        The cancellation is recorded on the job, the notification is dismissed
        and the provider is asked (best-effort) to drop the work. The job itself
        still settles if the provider completes it.

        Raises:
            JobNotFoundError: If the user owns no such job
            CancellationNotAllowedError: If the job is terminal or inside its grace period
        """
        if self.user_id is None:
            raise RuntimeError("Notifier is not listening")

        async with await self.uow_factory() as uow:
            job = await self.store.cancel(uow, self.user_id, task_id)
            snapshot = PendingJobRead.model_validate(job)

        self.dismiss(task_id)

        adapter = self.registry.get(snapshot.provider)
        try:
            accepted = await adapter.cancel(task_id, snapshot.job_metadata)
        except ServiceError as e:
            logger.warning("notifier.provider_cancel_failed", task_id=task_id, error=str(e))
            accepted = False
        logger.info("notifier.cancelled", task_id=task_id, provider_accepted=accepted)
        return snapshot

    async def handle_change(self, change: JobChange) -> None:
        """Apply one change event to the notification records."""
        job = change.job
        task_id = job.task_id
        self.last_event_at[task_id] = self.clock()

        if change.kind == JobChangeKind.DELETE:
            self.watched.pop(task_id, None)
            self.notifications.pop(task_id, None)
            return

        known = task_id in self.watched or task_id in self.notifications
        if job.is_terminal:
            self.watched.pop(task_id, None)
            if not known:
                return
            if task_id not in self._dismissed and not job.is_cancelled:
                self._finish(job)
            await self._fire_completion(job)
            return

        if task_id in self._dismissed or job.is_cancelled:
            self._dismissed.add(task_id)
            self.watched[task_id] = job
            return
        self._track(job)

    def refresh_progress(self, now: datetime | None = None) -> None:
        """Recompute message and progress of in-progress notifications."""
        now = now or self.clock()
        for task_id, notification in self.notifications.items():
            job = self.watched.get(task_id)
            if job is None or notification.state != NotificationState.IN_PROGRESS:
                continue
            elapsed = (now - job.created_at).total_seconds()
            notification.message = progress_message(elapsed, job.job_type)
            notification.progress = estimate_progress(elapsed, job.job_type)

    def tick(self, now: datetime | None = None) -> list[asyncio.Task]:
        """One heartbeat: refresh progress and start polls for quiet jobs.

        Returns:
            Poll tasks started by this tick
        """
        now = now or self.clock()
        self.refresh_progress(now)

        started: list[asyncio.Task] = []
        for task_id, job in list(self.watched.items()):
            if task_id in self._polling:
                continue
            if not self.registry.get(job.provider).supports_polling:
                continue
            last_event = self.last_event_at.get(task_id, job.created_at)
            if (now - last_event).total_seconds() < self.heartbeat_seconds:
                continue
            task = asyncio.create_task(self._poll(job))
            self._polling[task_id] = task
            started.append(task)
        return started

    def _track(self, job: PendingJobRead) -> None:
        self.watched[job.task_id] = job
        notification = self.notifications.get(job.task_id)
        elapsed = (self.clock() - job.created_at).total_seconds()
        if notification is None:
            notification = Notification(
                task_id=job.task_id,
                job_type=job.job_type,
                title=job.job_metadata.get("title") or default_title(job.job_type),
                message=progress_message(elapsed, job.job_type),
                thumbnail_url=job.job_metadata.get("image_url"),
            )
            self.notifications[job.task_id] = notification
        notification.progress = estimate_progress(elapsed, job.job_type)
        notification.message = progress_message(elapsed, job.job_type)

    def _finish(self, job: PendingJobRead) -> None:
        notification = self.notifications.get(job.task_id)
        if notification is None:
            self._track(job)
            self.watched.pop(job.task_id, None)
            notification = self.notifications[job.task_id]

        if job.status == JobStatus.COMPLETED:
            notification.state = NotificationState.COMPLETED
            notification.progress = 1.0
            notification.message = completed_message(notification.title)
            if job.job_type == JobType.IMAGE:
                notification.thumbnail_url = job.result_url
        else:
            notification.state = NotificationState.FAILED
            notification.error_message = job.error_message
            notification.message = job.error_message or "Generation failed"

    async def _fire_completion(self, job: PendingJobRead) -> None:
        if job.task_id in self._completed:
            return
        self._completed.add(job.task_id)
        for handler in self._completion_handlers.pop(job.task_id, []):
            try:
                result = handler(job)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("notifier.completion_handler_failed", task_id=job.task_id)

    async def _listen(self) -> None:
        assert self._subscription is not None
        subscription = self._subscription
        while True:
            change = await subscription.get()
            try:
                await self.handle_change(change)
            except Exception:
                logger.exception("notifier.change_failed", task_id=change.job.task_id)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                self.tick()
            except Exception:
                logger.exception("notifier.heartbeat_failed", user_id=self.user_id)

    async def _poll(self, job: PendingJobRead) -> None:
        try:
            await self.poller.drive(job)
        except Exception:
            logger.exception("notifier.poll_failed", task_id=job.task_id)
        finally:
            self._polling.pop(job.task_id, None)


class NotifierHub:
    """One notifier per user for the HTTP surface."""

    def __init__(self, notifier_factory: Callable[[], JobStatusNotifier]):
        self.notifier_factory = notifier_factory
        self._notifiers: dict[str, JobStatusNotifier] = {}

    def get(self, user_id: str) -> JobStatusNotifier | None:
        return self._notifiers.get(user_id)

    async def start(self, user_id: str) -> JobStatusNotifier:
        notifier = self._notifiers.get(user_id)
        if notifier is None:
            notifier = self.notifier_factory()
            self._notifiers[user_id] = notifier
        try:
            await notifier.start_listening(user_id)
        except BaseException:
            self._notifiers.pop(user_id, None)
            raise
        return notifier

    async def stop(self, user_id: str) -> bool:
        notifier = self._notifiers.pop(user_id, None)
        if notifier is None:
            return False
        await notifier.stop_listening()
        return True

    async def close(self) -> None:
        for user_id in list(self._notifiers):
            await self.stop(user_id)
