"""Idle Reaper: release a workstream nobody has talked to for a while."""

from __future__ import annotations

import time
from typing import Callable

import structlog

from baton.core.errors import StoreUnavailableError
from baton.core.types import ReleaseReason, WorkstreamKey
from baton.observability.events import EventSink
from baton.store.ownership import OwnershipStore

logger = structlog.get_logger()


class IdleReaper:
    """Inactivity deadline for one claim, plus the conditional release.

    The consumer resets it on every message and checks ``expired`` only
    while IDLE_OWNED, so a release never lands on in-flight work.
    """

    def __init__(
        self,
        key: WorkstreamKey,
        worker_id: str,
        store: OwnershipStore,
        events: EventSink,
        idle_s: float,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.key = key
        self.worker_id = worker_id
        self._store = store
        self._events = events
        self._idle_s = idle_s
        self._clock = clock or time.monotonic
        self._deadline = self._clock() + idle_s

    def reset(self) -> None:
        self._deadline = self._clock() + self._idle_s

    def remaining(self) -> float:
        return max(self._deadline - self._clock(), 0.0)

    @property
    def expired(self) -> bool:
        return self._clock() >= self._deadline

    async def release(self, reason: ReleaseReason = ReleaseReason.IDLE) -> bool:
        """Delete the OwnershipRecord if it is still ours.

        A record already reclaimed by another worker after a lease expiry is
        left alone. An unreachable store leaves the record to expire.
        """
        try:
            deleted = await self._store.release(self.key, self.worker_id)
        except StoreUnavailableError as e:
            logger.warning("release_deferred_to_expiry", workstream=str(self.key),
                           worker_id=self.worker_id, error=str(e))
            deleted = False
        await self._events.released(str(self.key), self.worker_id, reason, deleted)
        return deleted
