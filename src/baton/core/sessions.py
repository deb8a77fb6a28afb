"""Session/Branch Manager: keeps each workstream on the right thread context.

ensure_context(key, thread_id):
    same thread as last time      → fast path, nothing touched
    different (or first) thread   → flush previous, get-or-create the new
                                    ThreadContext, activate it, stamp
                                    last_switched_at

The flush of the previous context always completes (or fails) before the
new one is activated. A failed flush is logged loudly and the switch goes
ahead anyway: one stuck flush must not starve every other thread of the
workstream.
"""

from __future__ import annotations

import time
from typing import Callable

import structlog

from baton.context.base import ContextBackend
from baton.core.errors import ContextSwitchError, StoreUnavailableError
from baton.core.types import ContextHandle, WorkstreamKey
from baton.observability.events import EventSink
from baton.store.threads import ThreadContextStore

logger = structlog.get_logger()


class SessionManager:
    def __init__(
        self,
        backend: ContextBackend,
        threads: ThreadContextStore,
        events: EventSink,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._backend = backend
        self._threads = threads
        self._events = events
        self._clock = clock or time.time
        self._active: dict[str, ContextHandle] = {}

    def active(self, key: WorkstreamKey | str) -> ContextHandle | None:
        return self._active.get(str(key))

    async def ensure_context(self, key: WorkstreamKey, thread_id: str) -> ContextHandle:
        """Return the activated context for ``thread_id``.

        Raises ContextSwitchError if the new context cannot be activated.
        """
        current = self._active.get(str(key))
        if current is not None and current.thread_id == thread_id:
            return current

        if current is not None:
            await self._flush(key, current, reason=f"switch to {thread_id}")
            # Unknown until the new activation succeeds.
            self._active.pop(str(key), None)

        context = await self._threads.get_or_create(
            key, thread_id, self._backend.context_id_for(key, thread_id),
        )
        handle = await self._backend.activate(key, context)
        await self._threads.mark_switched(key, thread_id, at=self._clock())
        self._active[str(key)] = handle

        logger.info(
            "context_switched",
            workstream=str(key),
            from_thread=current.thread_id if current else None,
            to_thread=thread_id,
            context_id=handle.context_id,
        )
        return handle

    async def record_message(self, key: WorkstreamKey, thread_id: str, message_id: str) -> None:
        try:
            await self._threads.record_message(key, thread_id, message_id)
        except StoreUnavailableError as e:
            logger.warning("thread_context_update_failed", workstream=str(key),
                           thread_id=thread_id, message_id=message_id, error=str(e))

    async def release(self, key: WorkstreamKey, *, flush: bool = True) -> None:
        """Drop the workstream's active context, flushing it first unless told not to."""
        current = self._active.pop(str(key), None)
        if current is not None and flush:
            await self._flush(key, current, reason="release")

    async def _flush(self, key: WorkstreamKey, handle: ContextHandle, *, reason: str) -> None:
        try:
            wrote = await self._backend.flush(handle, reason=reason)
        except ContextSwitchError as e:
            await self._events.context_flush_failed(str(key), handle.thread_id, str(e))
            return
        logger.debug("context_flushed", workstream=str(key), thread_id=handle.thread_id,
                     wrote=wrote, reason=reason)
