"""In-process queues with the same delivery semantics as the SQL ones.

Used by tests and single-process deployments. Long-polls wait on an
``asyncio.Condition`` that every send/ack notifies.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Generic, TypeVar

from baton.core.types import ClaimOffer, WorkMessage
from baton.queues.base import Delivery, OfferQueue, QueueRouter, WorkQueue

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    body: T
    visible_at: float = 0.0
    receipt: str | None = None
    receive_count: int = 0


def _deliver(entry: _Entry[T], now: float, visibility_s: float) -> Delivery[T]:
    entry.receipt = uuid.uuid4().hex
    entry.visible_at = now + visibility_s
    entry.receive_count += 1
    return Delivery(body=entry.body, receipt=entry.receipt, receive_count=entry.receive_count)


async def _wait(cond: asyncio.Condition, timeout: float) -> None:
    try:
        await asyncio.wait_for(cond.wait(), timeout=max(timeout, 0.0))
    except asyncio.TimeoutError:
        pass


class InMemoryOfferQueue(OfferQueue):
    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._entries: list[_Entry[ClaimOffer]] = []
        self._cond = asyncio.Condition()

    async def publish(self, offer: ClaimOffer) -> None:
        async with self._cond:
            self._entries.append(_Entry(offer))
            self._cond.notify_all()

    async def receive(self, wait_s, visibility_s):
        deadline = self._clock() + wait_s
        async with self._cond:
            while True:
                now = self._clock()
                for entry in self._entries:
                    if entry.visible_at <= now:
                        return _deliver(entry, now, visibility_s)
                if now >= deadline:
                    return None
                next_visible = min((e.visible_at for e in self._entries), default=deadline)
                await _wait(self._cond, min(deadline, next_visible) - now)

    async def ack(self, receipt):
        async with self._cond:
            self._entries = [e for e in self._entries if e.receipt != receipt]

    def __len__(self) -> int:
        return len(self._entries)


class InMemoryWorkQueue(WorkQueue):
    def __init__(
        self,
        handle: str,
        dedup_window_s: float = 300.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(handle)
        self._clock = clock or time.monotonic
        self._dedup_window_s = dedup_window_s
        self._entries: list[_Entry[WorkMessage]] = []
        self._seen: dict[str, float] = {}
        self._seq = 0
        self._cond = asyncio.Condition()

    async def send(self, message):
        async with self._cond:
            now = self._clock()
            self._seen = {mid: at for mid, at in self._seen.items()
                          if now - at < self._dedup_window_s}
            if message.message_id in self._seen:
                return False
            self._seen[message.message_id] = now
            self._seq += 1
            self._entries.append(_Entry(replace(message, arrival_order=self._seq)))
            self._cond.notify_all()
            return True

    async def receive(self, wait_s, visibility_s):
        deadline = self._clock() + wait_s
        async with self._cond:
            while True:
                now = self._clock()
                head = self._entries[0] if self._entries else None
                if head is not None and head.visible_at <= now:
                    return _deliver(head, now, visibility_s)
                if now >= deadline:
                    return None
                wake = deadline if head is None else min(deadline, head.visible_at)
                await _wait(self._cond, wake - now)

    async def ack(self, receipt):
        async with self._cond:
            for i, entry in enumerate(self._entries):
                if entry.receipt == receipt:
                    del self._entries[i]
                    self._cond.notify_all()
                    return True
            return False

    async def extend(self, receipt, visibility_s):
        async with self._cond:
            for entry in self._entries:
                if entry.receipt == receipt:
                    entry.visible_at = self._clock() + visibility_s
                    return True
            return False

    async def pending_count(self):
        return len(self._entries)

    async def latest_arrival(self):
        return self._seq


class InMemoryQueueRouter(QueueRouter):
    def __init__(self, dedup_window_s: float = 300.0) -> None:
        self.offers = InMemoryOfferQueue()
        self._dedup_window_s = dedup_window_s
        self._queues: dict[str, InMemoryWorkQueue] = {}

    def work_queue(self, handle: str) -> InMemoryWorkQueue:
        queue = self._queues.get(handle)
        if queue is None:
            queue = self._queues[handle] = InMemoryWorkQueue(handle, self._dedup_window_s)
        return queue
