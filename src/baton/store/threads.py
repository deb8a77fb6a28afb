"""ThreadContext persistence: one record per (workstream, thread), never deleted."""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import replace

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from baton.core.errors import StoreUnavailableError
from baton.core.types import ThreadContext, WorkstreamKey
from baton.db.models import ThreadContextRow
from baton.db.retry import with_retries
from baton.db.session import create_session_factory


class ThreadContextStore(ABC):
    @abstractmethod
    async def get(self, key: WorkstreamKey | str, thread_id: str) -> ThreadContext | None: ...

    @abstractmethod
    async def get_or_create(self, key: WorkstreamKey | str, thread_id: str,
                            context_id: str) -> ThreadContext:
        """Return the thread's context, creating it with ``context_id`` on first use."""

    @abstractmethod
    async def mark_switched(self, key: WorkstreamKey | str, thread_id: str,
                            at: float | None = None) -> ThreadContext:
        """Set ``last_switched_at`` after the context has been activated."""

    @abstractmethod
    async def record_message(self, key: WorkstreamKey | str, thread_id: str,
                             message_id: str) -> None: ...

    @abstractmethod
    async def list_for(self, key: WorkstreamKey | str) -> list[ThreadContext]:
        """All contexts of a workstream, most recently switched first."""


class InMemoryThreadContextStore(ThreadContextStore):
    def __init__(self) -> None:
        self._contexts: dict[tuple[str, str], ThreadContext] = {}
        self._lock = asyncio.Lock()

    async def get(self, key, thread_id):
        return self._contexts.get((str(key), thread_id))

    async def get_or_create(self, key, thread_id, context_id):
        async with self._lock:
            existing = self._contexts.get((str(key), thread_id))
            if existing is not None:
                return existing
            ctx = ThreadContext(thread_id=thread_id, workstream_key=str(key), context_id=context_id)
            self._contexts[(str(key), thread_id)] = ctx
            return ctx

    async def mark_switched(self, key, thread_id, at=None):
        async with self._lock:
            ctx = replace(self._contexts[(str(key), thread_id)],
                          last_switched_at=time.time() if at is None else at)
            self._contexts[(str(key), thread_id)] = ctx
            return ctx

    async def record_message(self, key, thread_id, message_id):
        async with self._lock:
            ctx = self._contexts.get((str(key), thread_id))
            if ctx is not None:
                self._contexts[(str(key), thread_id)] = replace(ctx, last_message_id=message_id)

    async def list_for(self, key):
        found = [c for (k, _), c in self._contexts.items() if k == str(key)]
        return sorted(found, key=lambda c: c.last_switched_at, reverse=True)


class SqlThreadContextStore(ThreadContextStore):
    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._sessions = session_factory or create_session_factory(engine)
        self._table = ThreadContextRow.__table__

    @staticmethod
    def _to_context(row) -> ThreadContext:
        return ThreadContext(
            thread_id=row.thread_id,
            workstream_key=row.workstream_key,
            context_id=row.context_id,
            last_message_id=row.last_message_id,
            last_switched_at=row.last_switched_at,
        )

    def _where(self, key, thread_id):
        t = self._table
        return (t.c.workstream_key == str(key), t.c.thread_id == thread_id)

    @with_retries("store", StoreUnavailableError)
    async def get(self, key, thread_id):
        async with self._sessions() as session:
            row = (await session.execute(select(self._table).where(*self._where(key, thread_id)))).first()
        return self._to_context(row) if row is not None else None

    @with_retries("store", StoreUnavailableError)
    async def get_or_create(self, key, thread_id, context_id):
        async with self._sessions() as session:
            row = (await session.execute(select(self._table).where(*self._where(key, thread_id)))).first()
            if row is not None:
                return self._to_context(row)
            session.add(ThreadContextRow(
                workstream_key=str(key),
                thread_id=thread_id,
                context_id=context_id,
                last_switched_at=0.0,
            ))
            try:
                await session.commit()
            except IntegrityError:
                # Created concurrently; the unique constraint picked the winner.
                await session.rollback()
                row = (await session.execute(
                    select(self._table).where(*self._where(key, thread_id))
                )).one()
                return self._to_context(row)
        return ThreadContext(thread_id=thread_id, workstream_key=str(key), context_id=context_id)

    @with_retries("store", StoreUnavailableError)
    async def mark_switched(self, key, thread_id, at=None):
        stmt = (
            update(self._table)
            .where(*self._where(key, thread_id))
            .values(last_switched_at=time.time() if at is None else at)
            .returning(*self._table.c)
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).one()
            await session.commit()
        return self._to_context(row)

    @with_retries("store", StoreUnavailableError)
    async def record_message(self, key, thread_id, message_id):
        stmt = update(self._table).where(*self._where(key, thread_id)).values(last_message_id=message_id)
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    @with_retries("store", StoreUnavailableError)
    async def list_for(self, key):
        t = self._table
        stmt = select(t).where(t.c.workstream_key == str(key)).order_by(t.c.last_switched_at.desc())
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
        return [self._to_context(r) for r in rows]
