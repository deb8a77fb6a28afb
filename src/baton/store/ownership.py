"""Ownership Store: the single arbiter of who may dispatch for a workstream.

Every transition is one atomic conditional write:

    try_claim  create-if-absent-or-expired-or-already-mine
    renew      extend-if-owned-by-me-and-not-expired
    release    delete-if-owned-by-me

No transition reads first and writes second. ``get`` exists for intake
and status reporting only and never gates a mutation.

try_claim is idempotent per worker: a retried claim whose first commit
landed (connection dropped before the reply) finds its own row and still
returns CLAIMED. Callers that may already run a consumer for the key must
check that themselves (see ClaimBroker).
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from baton.core.errors import LeaseLostError, StoreUnavailableError
from baton.core.types import ClaimResult, OwnershipRecord, WorkstreamKey
from baton.db.models import OwnershipRow
from baton.db.retry import with_retries
from baton.db.session import create_session_factory, dialect_insert

logger = structlog.get_logger()

Clock = Callable[[], float]


class OwnershipStore(ABC):
    """Conditional key-value store of OwnershipRecords."""

    @abstractmethod
    async def try_claim(
        self, key: WorkstreamKey | str, worker_id: str, lease_s: float,
    ) -> tuple[ClaimResult, OwnershipRecord | None]:
        """Create the record unless a non-expired one held by another worker exists.

        Returns ``(CLAIMED, record)`` or ``(ALREADY_OWNED, None)``.
        """

    @abstractmethod
    async def renew(self, key: WorkstreamKey | str, worker_id: str, lease_s: float) -> OwnershipRecord:
        """Extend the lease. Raises LeaseLostError if not owned by ``worker_id``."""

    @abstractmethod
    async def release(self, key: WorkstreamKey | str, worker_id: str) -> bool:
        """Delete the record if owned by ``worker_id``. True if a row was deleted."""

    @abstractmethod
    async def get(self, key: WorkstreamKey | str) -> OwnershipRecord | None:
        """Current non-expired record, or None."""


# ═══════════════════════════════════════════════════════════════════════════
# IN-MEMORY
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryOwnershipStore(OwnershipStore):
    """Process-local store. Conditional writes are serialized by one lock.

    ``clock`` is injectable so tests can expire leases without sleeping.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or time.time
        self._records: dict[str, OwnershipRecord] = {}
        self._lock = asyncio.Lock()

    async def try_claim(self, key, worker_id, lease_s):
        k = str(key)
        async with self._lock:
            now = self._clock()
            current = self._records.get(k)
            if (current is not None and not current.is_expired(now)
                    and current.worker_id != worker_id):
                return ClaimResult.ALREADY_OWNED, None
            record = OwnershipRecord(
                workstream_key=k,
                worker_id=worker_id,
                claimed_at=now,
                last_activity_at=now,
                lease_expires_at=now + lease_s,
            )
            self._records[k] = record
            return ClaimResult.CLAIMED, record

    async def renew(self, key, worker_id, lease_s):
        k = str(key)
        async with self._lock:
            now = self._clock()
            current = self._records.get(k)
            if current is None or current.worker_id != worker_id or current.is_expired(now):
                raise LeaseLostError(k, worker_id)
            record = OwnershipRecord(
                workstream_key=k,
                worker_id=worker_id,
                claimed_at=current.claimed_at,
                last_activity_at=now,
                lease_expires_at=now + lease_s,
            )
            self._records[k] = record
            return record

    async def release(self, key, worker_id):
        k = str(key)
        async with self._lock:
            current = self._records.get(k)
            if current is None or current.worker_id != worker_id:
                return False
            del self._records[k]
            return True

    async def get(self, key):
        async with self._lock:
            current = self._records.get(str(key))
            if current is None or current.is_expired(self._clock()):
                return None
            return current

    # Test hooks: simulate an operator or a bug removing/stealing a record.

    def force_delete(self, key: WorkstreamKey | str) -> None:
        self._records.pop(str(key), None)

    def force_owner(self, key: WorkstreamKey | str, worker_id: str, lease_s: float = 300.0) -> None:
        now = self._clock()
        self._records[str(key)] = OwnershipRecord(str(key), worker_id, now, now, now + lease_s)


# ═══════════════════════════════════════════════════════════════════════════
# SQL
# ═══════════════════════════════════════════════════════════════════════════

class SqlOwnershipStore(OwnershipStore):
    """OwnershipRecords in the ``workstream_ownership`` table.

    Claim is ``INSERT ... ON CONFLICT (workstream_key) DO UPDATE ... WHERE
    lease_expires_at < :now OR worker_id = excluded.worker_id RETURNING *``:
    a live row held by another worker makes the conflict branch a no-op and
    nothing is returned.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._engine = engine
        self._sessions = session_factory or create_session_factory(engine)
        self._clock = clock or time.time
        self._insert = dialect_insert(engine)
        self._table = OwnershipRow.__table__

    @staticmethod
    def _to_record(row) -> OwnershipRecord:
        return OwnershipRecord(
            workstream_key=row.workstream_key,
            worker_id=row.worker_id,
            claimed_at=row.claimed_at,
            last_activity_at=row.last_activity_at,
            lease_expires_at=row.lease_expires_at,
        )

    @with_retries("store", StoreUnavailableError)
    async def try_claim(self, key, worker_id, lease_s):
        t = self._table
        now = self._clock()
        values = {
            "workstream_key": str(key),
            "worker_id": worker_id,
            "claimed_at": now,
            "last_activity_at": now,
            "lease_expires_at": now + lease_s,
        }
        stmt = self._insert(t).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[t.c.workstream_key],
            set_={
                "worker_id": stmt.excluded.worker_id,
                "claimed_at": stmt.excluded.claimed_at,
                "last_activity_at": stmt.excluded.last_activity_at,
                "lease_expires_at": stmt.excluded.lease_expires_at,
            },
            where=or_(t.c.lease_expires_at < now, t.c.worker_id == stmt.excluded.worker_id),
        ).returning(*t.c)

        async with self._sessions() as session:
            row = (await session.execute(stmt)).first()
            await session.commit()

        if row is None:
            return ClaimResult.ALREADY_OWNED, None
        return ClaimResult.CLAIMED, self._to_record(row)

    @with_retries("store", StoreUnavailableError)
    async def renew(self, key, worker_id, lease_s):
        t = self._table
        now = self._clock()
        stmt = (
            update(t)
            .where(
                t.c.workstream_key == str(key),
                t.c.worker_id == worker_id,
                t.c.lease_expires_at >= now,
            )
            .values(last_activity_at=now, lease_expires_at=now + lease_s)
            .returning(*t.c)
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).first()
            await session.commit()

        if row is None:
            raise LeaseLostError(str(key), worker_id)
        return self._to_record(row)

    @with_retries("store", StoreUnavailableError)
    async def release(self, key, worker_id):
        t = self._table
        stmt = delete(t).where(t.c.workstream_key == str(key), t.c.worker_id == worker_id)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount > 0

    @with_retries("store", StoreUnavailableError)
    async def get(self, key):
        t = self._table
        stmt = select(t).where(t.c.workstream_key == str(key), t.c.lease_expires_at >= self._clock())
        async with self._sessions() as session:
            row = (await session.execute(stmt)).first()
        return self._to_record(row) if row is not None else None
