"""Queues backed by the ``work_messages`` and ``claim_offers`` tables.

Receive is a single ``UPDATE ... WHERE id = (<head>) AND visible_at <= :now
RETURNING *``. Two receivers racing for the same row cannot both match:
the loser's re-checked ``visible_at`` no longer qualifies.

Work queue: the head is the oldest un-acked row of the group, in flight or
not, so a group never hands out its second message while the first is
outstanding. Acked rows are kept until the dedup window passes.

Offer queue: the head is any visible row; ``FOR UPDATE SKIP LOCKED`` lets
concurrent brokers on Postgres pick different offers.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from baton.core.errors import QueueUnavailableError
from baton.core.types import ClaimOffer, WorkMessage
from baton.db.models import ClaimOfferRow, WorkMessageRow
from baton.db.retry import with_retries
from baton.db.session import create_session_factory, dialect_insert
from baton.queues.base import Delivery, OfferQueue, QueueRouter, WorkQueue

Clock = Callable[[], float]


class SqlOfferQueue(OfferQueue):
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        poll_interval_s: float = 0.5,
        clock: Clock | None = None,
    ) -> None:
        self._sessions = sessions
        self._poll_interval_s = poll_interval_s
        self._clock = clock or time.time
        self._table = ClaimOfferRow.__table__

    @with_retries("offers", QueueUnavailableError)
    async def publish(self, offer):
        now = self._clock()
        async with self._sessions() as session:
            session.add(ClaimOfferRow(
                workstream_key=offer.workstream_key,
                queue_handle=offer.queue_handle,
                created_at=now,
                visible_at=now,
                receive_count=0,
            ))
            await session.commit()

    @with_retries("offers", QueueUnavailableError)
    async def _receive_once(self, visibility_s: float) -> Delivery[ClaimOffer] | None:
        t = self._table
        now = self._clock()
        head = (
            select(t.c.id)
            .where(t.c.visible_at <= now)
            .order_by(t.c.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        receipt = uuid.uuid4().hex
        stmt = (
            update(t)
            .where(t.c.id == head, t.c.visible_at <= now)
            .values(receipt=receipt, visible_at=now + visibility_s,
                    receive_count=t.c.receive_count + 1)
            .returning(t.c.workstream_key, t.c.queue_handle, t.c.receive_count)
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).first()
            await session.commit()
        if row is None:
            return None
        return Delivery(
            body=ClaimOffer(workstream_key=row.workstream_key, queue_handle=row.queue_handle),
            receipt=receipt,
            receive_count=row.receive_count,
        )

    async def receive(self, wait_s, visibility_s):
        deadline = time.monotonic() + wait_s
        while True:
            delivery = await self._receive_once(visibility_s)
            if delivery is not None or time.monotonic() >= deadline:
                return delivery
            await asyncio.sleep(min(self._poll_interval_s, max(deadline - time.monotonic(), 0)))

    @with_retries("offers", QueueUnavailableError)
    async def ack(self, receipt):
        async with self._sessions() as session:
            await session.execute(delete(self._table).where(self._table.c.receipt == receipt))
            await session.commit()


class SqlWorkQueue(WorkQueue):
    def __init__(
        self,
        handle: str,
        engine: AsyncEngine,
        sessions: async_sessionmaker[AsyncSession],
        dedup_window_s: float = 300.0,
        poll_interval_s: float = 0.5,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(handle)
        self._sessions = sessions
        self._insert = dialect_insert(engine)
        self._dedup_window_s = dedup_window_s
        self._poll_interval_s = poll_interval_s
        self._clock = clock or time.time
        self._table = WorkMessageRow.__table__

    @with_retries("work_queue", QueueUnavailableError)
    async def send(self, message):
        t = self._table
        now = self._clock()
        purge = delete(t).where(
            t.c.queue_handle == self.handle,
            t.c.acked_at.is_not(None),
            t.c.enqueued_at < now - self._dedup_window_s,
        )
        stmt = (
            self._insert(t)
            .values(
                queue_handle=self.handle,
                message_id=message.message_id,
                workstream_key=message.workstream_key,
                thread_id=message.thread_id,
                payload=message.payload,
                continuation_token=message.continuation_token,
                enqueued_at=now,
                visible_at=now,
                receive_count=0,
            )
            .on_conflict_do_nothing(index_elements=[t.c.queue_handle, t.c.message_id])
            .returning(t.c.id)
        )
        async with self._sessions() as session:
            await session.execute(purge)
            inserted = (await session.execute(stmt)).first()
            await session.commit()
        return inserted is not None

    @with_retries("work_queue", QueueUnavailableError)
    async def _receive_once(self, visibility_s: float) -> Delivery[WorkMessage] | None:
        t = self._table
        now = self._clock()
        head = (
            select(t.c.id)
            .where(t.c.queue_handle == self.handle, t.c.acked_at.is_(None))
            .order_by(t.c.id)
            .limit(1)
            .scalar_subquery()
        )
        receipt = uuid.uuid4().hex
        stmt = (
            update(t)
            .where(t.c.id == head, t.c.visible_at <= now)
            .values(receipt=receipt, visible_at=now + visibility_s,
                    receive_count=t.c.receive_count + 1)
            .returning(*t.c)
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).first()
            await session.commit()
        if row is None:
            return None
        message = WorkMessage(
            message_id=row.message_id,
            workstream_key=row.workstream_key,
            thread_id=row.thread_id,
            payload=dict(row.payload or {}),
            arrival_order=row.id,
            continuation_token=row.continuation_token,
        )
        return Delivery(body=message, receipt=receipt, receive_count=row.receive_count)

    async def receive(self, wait_s, visibility_s):
        deadline = time.monotonic() + wait_s
        while True:
            delivery = await self._receive_once(visibility_s)
            if delivery is not None or time.monotonic() >= deadline:
                return delivery
            await asyncio.sleep(min(self._poll_interval_s, max(deadline - time.monotonic(), 0)))

    @with_retries("work_queue", QueueUnavailableError)
    async def ack(self, receipt):
        t = self._table
        stmt = (
            update(t)
            .where(t.c.queue_handle == self.handle, t.c.receipt == receipt, t.c.acked_at.is_(None))
            .values(acked_at=self._clock(), receipt=None)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount > 0

    @with_retries("work_queue", QueueUnavailableError)
    async def extend(self, receipt, visibility_s):
        t = self._table
        stmt = (
            update(t)
            .where(t.c.queue_handle == self.handle, t.c.receipt == receipt, t.c.acked_at.is_(None))
            .values(visible_at=self._clock() + visibility_s)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount > 0

    @with_retries("work_queue", QueueUnavailableError)
    async def pending_count(self):
        t = self._table
        stmt = select(func.count()).select_from(t).where(
            t.c.queue_handle == self.handle, t.c.acked_at.is_(None)
        )
        async with self._sessions() as session:
            return int((await session.execute(stmt)).scalar_one())

    @with_retries("work_queue", QueueUnavailableError)
    async def latest_arrival(self):
        t = self._table
        stmt = select(func.coalesce(func.max(t.c.id), 0)).where(t.c.queue_handle == self.handle)
        async with self._sessions() as session:
            return int((await session.execute(stmt)).scalar_one())


class SqlQueueRouter(QueueRouter):
    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        dedup_window_s: float = 300.0,
        poll_interval_s: float = 0.5,
    ) -> None:
        self._engine = engine
        self._sessions = session_factory or create_session_factory(engine)
        self._dedup_window_s = dedup_window_s
        self._poll_interval_s = poll_interval_s
        self.offers = SqlOfferQueue(self._sessions, poll_interval_s)
        self._queues: dict[str, SqlWorkQueue] = {}

    def work_queue(self, handle: str) -> SqlWorkQueue:
        queue = self._queues.get(handle)
        if queue is None:
            queue = self._queues[handle] = SqlWorkQueue(
                handle, self._engine, self._sessions,
                dedup_window_s=self._dedup_window_s,
                poll_interval_s=self._poll_interval_s,
            )
        return queue
