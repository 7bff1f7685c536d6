"""Progress store: append-only job progress rows with insert subscriptions."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import AsyncIterator, Protocol

from reportflow.core.errors import SubscriptionError
from reportflow.domain import ProgressRecord


class ProgressSubscription(Protocol):
    """Stream of newly inserted records for one job."""

    def __aiter__(self) -> AsyncIterator[ProgressRecord]: ...

    def close(self) -> None: ...


class ProgressStore(Protocol):
    """Persistence contract for job progress records."""

    async def latest(self, job_id: str) -> ProgressRecord | None: ...

    async def append(self, record: ProgressRecord) -> ProgressRecord: ...

    async def subscribe(self, job_id: str) -> ProgressSubscription: ...


class _QueueSubscription:
    def __init__(self, store: "InMemoryProgressStore", job_id: str) -> None:
        self._store = store
        self.job_id = job_id
        self._queue: asyncio.Queue[ProgressRecord | BaseException | None] = asyncio.Queue()
        self.closed = False

    def push(self, item: ProgressRecord | BaseException) -> None:
        if not self.closed:
            self._queue.put_nowait(item)

    def __aiter__(self) -> "_QueueSubscription":
        return self

    async def __anext__(self) -> ProgressRecord:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None or self.closed:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self.close()
            raise item
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._store._detach(self)
        self._queue.put_nowait(None)


class InMemoryProgressStore:
    """In-memory progress store for local runs and tests."""

    def __init__(self) -> None:
        self._records: dict[str, list[ProgressRecord]] = {}
        self._subscribers: dict[str, list[_QueueSubscription]] = {}
        self._counter = 0

    # ------------------------------------------------------------------
    # store contract
    # ------------------------------------------------------------------
    async def latest(self, job_id: str) -> ProgressRecord | None:
        records = self._records.get(job_id)
        if not records:
            return None
        # ties on created_at resolve to the most recently appended row
        return max(reversed(records), key=lambda record: record.created_at)

    async def append(self, record: ProgressRecord) -> ProgressRecord:
        self._counter += 1
        stored = replace(record, record_id=record.record_id or f"rec-{self._counter:06d}")
        self._records.setdefault(stored.job_id, []).append(stored)
        for subscription in list(self._subscribers.get(stored.job_id, [])):
            subscription.push(stored)
        return stored

    async def subscribe(self, job_id: str) -> _QueueSubscription:
        subscription = _QueueSubscription(self, job_id)
        self._subscribers.setdefault(job_id, []).append(subscription)
        return subscription

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _detach(self, subscription: _QueueSubscription) -> None:
        subscribers = self._subscribers.get(subscription.job_id)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
            if not subscribers:
                del self._subscribers[subscription.job_id]

    def history(self, job_id: str) -> list[ProgressRecord]:
        return list(self._records.get(job_id, []))

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))

    def drop_subscriptions(self, job_id: str, reason: str = "channel closed") -> int:
        """Fail every open subscription for ``job_id`` as a transport drop would."""

        subscribers = list(self._subscribers.get(job_id, []))
        for subscription in subscribers:
            subscription.push(SubscriptionError(reason))
        return len(subscribers)

    def reset(self) -> None:
        for subscribers in list(self._subscribers.values()):
            for subscription in list(subscribers):
                subscription.close()
        self._records.clear()
        self._subscribers.clear()
        self._counter = 0
