"""Interrupt Coordinator: stop superseded work so newer work can start.

Escalation:
    1. set the request's CancellationSignal (cooperative stop)
    2. wait up to G for the executor task to return        → ACK
    3. otherwise Task.cancel() and wait once more, bounded  → FORCED

A forced interrupt is logged and counted per workstream, then processing
continues. It never blocks the next message: if the task still refuses to
finish after the hard cancel it is abandoned and left to the event loop.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

import structlog

from baton.core.executor import ExecutionResult
from baton.core.types import ActiveProcessingState, InterruptOutcome, WorkMessage
from baton.observability.events import EventSink

logger = structlog.get_logger()

# Floor for the post-cancel wait so a zero grace period still lets
# CancelledError propagate through the executor's cleanup.
_MIN_CANCEL_WAIT_S = 0.05


@dataclass(frozen=True)
class InterruptResult:
    outcome: InterruptOutcome
    stop_ms: float
    result: ExecutionResult | None = None

    @property
    def finished_anyway(self) -> bool:
        """The executor ran to completion instead of acknowledging the stop."""
        return self.result is not None and not self.result.cancelled


class InterruptCoordinator:
    def __init__(self, events: EventSink, grace_s: float) -> None:
        self._events = events
        self._grace_s = grace_s

    async def on_new_message_while_busy(
        self,
        state: ActiveProcessingState,
        new_message: WorkMessage | None = None,
        *,
        reason: str = "newer_message",
    ) -> InterruptResult:
        task = state.executor_task
        state.interrupt_requested = True
        state.cancellation.request(reason)
        t0 = time.monotonic()

        logger.info(
            "interrupt_signal_sent",
            workstream=state.workstream_key,
            message_id=state.current_message_id,
            new_message_id=new_message.message_id if new_message else None,
            reason=reason,
        )

        done, _ = await asyncio.wait({task}, timeout=self._grace_s)
        if task in done:
            outcome = InterruptOutcome.ACK
            result = _result_of(task)
        else:
            outcome = InterruptOutcome.FORCED
            result = None
            task.cancel()
            done, _ = await asyncio.wait({task}, timeout=max(self._grace_s, _MIN_CANCEL_WAIT_S))
            if task in done:
                _result_of(task)
            else:
                logger.error(
                    "executor_task_abandoned",
                    workstream=state.workstream_key,
                    message_id=state.current_message_id,
                )

        stop_ms = (time.monotonic() - t0) * 1000
        await self._events.interrupted(
            state.workstream_key, state.current_message_id, outcome, stop_ms, reason,
        )
        return InterruptResult(outcome=outcome, stop_ms=stop_ms, result=result)


def _result_of(task: asyncio.Task[ExecutionResult]) -> ExecutionResult:
    """Result of a task that returned (or raised) after the stop signal."""
    if task.cancelled():
        return ExecutionResult(success=False, cancelled=True, summary="cancelled")
    exc = task.exception()
    if exc is not None:
        # Raising after the signal still counts as stopping.
        return ExecutionResult(success=False, cancelled=True, summary=f"stopped with error: {exc}")
    return task.result()
