"""In-process realtime change feed for the pending job table.

Committed inserts, updates and deletes of PendingJob rows are published here by the
UnitOfWork; subscribers receive only the changes of the user they subscribed for.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum

import structlog

from mediagen.models.pending_job import PendingJobRead

logger = structlog.get_logger()


class JobChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class JobChange:
    """Row-level change event carrying a detached snapshot of the job."""

    kind: JobChangeKind
    job: PendingJobRead

    @property
    def user_id(self) -> str:
        return self.job.user_id


class Subscription:
    """Per-user queue of change events. Must be closed to release it."""

    def __init__(self, feed: "ChangeFeed", user_id: str):
        self.feed = feed
        self.user_id = user_id
        self.queue: asyncio.Queue[JobChange] = asyncio.Queue()
        self.closed = False

    async def get(self) -> JobChange:
        return await self.queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.feed._unsubscribe(self)


class ChangeFeed:
    """Fan-out of job changes to per-user subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(self, user_id: str) -> Subscription:
        subscription = Subscription(self, user_id)
        self._subscriptions[user_id].add(subscription)
        logger.debug("change_feed.subscribed", user_id=user_id)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscriptions.get(subscription.user_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscriptions[subscription.user_id]
        logger.debug("change_feed.unsubscribed", user_id=subscription.user_id)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscriptions.get(user_id, ()))

    def publish(self, change: JobChange) -> None:
        for subscription in list(self._subscriptions.get(change.user_id, ())):
            subscription.queue.put_nowait(change)
