"""Context activation backend contract.

A backend turns a ThreadContext into something the executor can work in
(for git: the checked-out ``thread-<id>`` branch of the workstream's
repository) and persists whatever is pending in it on ``flush``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from baton.core.types import ContextHandle, ThreadContext, WorkstreamKey


class ContextBackend(ABC):
    def context_id_for(self, key: WorkstreamKey, thread_id: str) -> str:
        """Durable context id for a new thread. Stable per thread."""
        return f"thread-{thread_id}"

    @abstractmethod
    async def activate(self, key: WorkstreamKey, context: ThreadContext) -> ContextHandle:
        """Make ``context`` the active one. Raises ContextSwitchError."""

    @abstractmethod
    async def flush(self, handle: ContextHandle, *, reason: str) -> bool:
        """Persist pending state of ``handle``. True if anything was written.

        Raises ContextSwitchError.
        """
