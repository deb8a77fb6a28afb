"""Task Executor contract.

The executor is the long-running, cancellable operation a message is
dispatched to. The core only knows this shape:

    result = await executor.execute(ExecutionRequest(...))

Stopping is cooperative first: the Interrupt Coordinator sets the
request's ``CancellationSignal`` and the executor is expected to persist
what it can and return ``ExecutionResult(cancelled=True)``. An executor
that ignores the signal is hard-cancelled (``asyncio.Task.cancel``) once
the grace period runs out.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from baton.core.types import ContextHandle


class CancellationSignal:
    """One-shot cooperative stop request shared with a running executor."""

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def request(self, reason: str) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> str | None:
        await self._event.wait()
        return self.reason


@dataclass(frozen=True)
class ExecutionRequest:
    workstream_key: str
    thread_id: str
    message_id: str
    payload: dict[str, Any]
    context: ContextHandle
    cancellation: CancellationSignal
    continuation_token: str | None = None


@dataclass(frozen=True)
class ExecutionResult:
    """What the executor reports back.

    ``cancelled`` is the stop acknowledgment: the executor saw the
    cancellation signal and returned on its own.
    """
    success: bool
    summary: str = ""
    committed: bool = False
    cancelled: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary,
            "committed": self.committed,
            "cancelled": self.cancelled,
            "details": self.details,
        }


@runtime_checkable
class TaskExecutor(Protocol):
    async def execute(self, request: ExecutionRequest) -> ExecutionResult: ...
