"""Work Consumer: drains one claimed workstream, in order, while it owns it.

State machine:
    IDLE_OWNED → DISPATCHING → COMPLETED → IDLE_OWNED
                             → INTERRUPTED → DISPATCHING[next]
    any state  → RELEASED (terminal)

One consumer exists per successful claim (one claim epoch). While it runs:
    - a heartbeat renews the lease every ``heartbeat_s`` (< L/2)
    - the Idle Reaper deadline is reset on every message
    - each message is dispatched to the Task Executor as its own task and
      watched every ``interrupt_poll_s`` for: completion, lease loss,
      shutdown, and newer arrivals on the work queue

Interrupt detection:
    The work queue stamps every accepted message with a monotonically
    increasing arrival order. On receiving a message the consumer records the
    queue's latest arrival; a higher value seen while dispatching means a
    message arrived *during* this dispatch, and the in-flight one is
    superseded. Backlog that was already queued is processed in order.

Authority:
    The lease is renewed (conditional update) before dispatch and again
    before any side effect of finishing a message. If that renewal fails,
    nothing is delivered, nothing is acked, and the consumer releases:
    the message stays in the durable queue for whoever owns the key next.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable

import structlog

from baton.config import LeaseTimings
from baton.core.aio import until_set
from baton.core.errors import (
    ContextSwitchError,
    LeaseLostError,
    QueueUnavailableError,
    ResultDeliveryError,
    StoreUnavailableError,
)
from baton.core.executor import CancellationSignal, ExecutionRequest, ExecutionResult, TaskExecutor
from baton.core.interrupts import InterruptCoordinator, InterruptResult
from baton.core.reaper import IdleReaper
from baton.core.results import ResultSink
from baton.core.sessions import SessionManager
from baton.core.types import (
    ActiveProcessingState,
    ClaimOffer,
    ConsumerState,
    ContextHandle,
    MessageOutcome,
    OwnershipRecord,
    ReleaseReason,
    WorkMessage,
    WorkstreamKey,
)
from baton.observability.events import EventSink
from baton.queues.base import Delivery, QueueRouter
from baton.store.ownership import OwnershipStore

logger = structlog.get_logger()

_Dispatched = tuple[MessageOutcome, ExecutionResult | None, float]


def _outcome_of(result: ExecutionResult) -> MessageOutcome:
    return MessageOutcome.COMPLETED if result.success else MessageOutcome.FAILED


class WorkConsumer:
    def __init__(
        self,
        key: WorkstreamKey,
        worker_id: str,
        record: OwnershipRecord,
        *,
        store: OwnershipStore,
        router: QueueRouter,
        sessions: SessionManager,
        executor: TaskExecutor,
        results: ResultSink,
        events: EventSink,
        timings: LeaseTimings,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.key = key
        self.worker_id = worker_id
        self.queue = router.for_key(key)
        self._offers = router.offers
        self._store = store
        self._sessions = sessions
        self._executor = executor
        self._results = results
        self._events = events
        self._timings = timings
        self._clock = clock or time.time

        self.state = ConsumerState.IDLE_OWNED
        self.active: ActiveProcessingState | None = None
        self.claimed_at = record.claimed_at
        self.lease_expires_at = record.lease_expires_at
        self.release_reason: ReleaseReason | None = None
        self.messages_handled = 0

        self._seen: set[str] = set()
        self._lease_lost = asyncio.Event()
        self._stopping = asyncio.Event()
        self._reaper = IdleReaper(key, worker_id, store, events, timings.idle_s)
        self._interrupts = InterruptCoordinator(events, timings.grace_s)

    # ═══════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════

    async def run(self) -> ReleaseReason:
        """Consume until idle, lease loss or shutdown. Always ends RELEASED."""
        heartbeat = asyncio.create_task(self._heartbeat(), name=f"heartbeat:{self.key}")
        reason = ReleaseReason.SHUTDOWN
        try:
            reason = await self._consume()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("consumer_failed", workstream=str(self.key), error=str(e))
            reason = ReleaseReason.ERROR
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            await self._release(reason)
        return reason

    def stop(self) -> None:
        """Ask the consumer to interrupt in-flight work and release."""
        self._stopping.set()

    @property
    def lease_lost(self) -> bool:
        return self._lease_lost.is_set()

    def _transition(self, state: ConsumerState) -> None:
        logger.debug("consumer_state", workstream=str(self.key),
                     from_state=self.state.value, to_state=state.value)
        self.state = state

    def status(self) -> dict[str, Any]:
        active = self.active
        return {
            "workstream": str(self.key),
            "state": self.state.value,
            "current_message_id": active.current_message_id if active else None,
            "current_thread_id": active.current_thread_id if active else None,
            "interrupt_requested": active.interrupt_requested if active else False,
            "claimed_at": self.claimed_at,
            "lease_expires_at": self.lease_expires_at,
            "idle_remaining_s": round(self._reaper.remaining(), 1),
            "messages_handled": self.messages_handled,
        }

    async def _consume(self) -> ReleaseReason:
        while True:
            if self._lease_lost.is_set():
                return ReleaseReason.LEASE_LOST
            if self._stopping.is_set():
                return ReleaseReason.SHUTDOWN
            if self._reaper.expired:
                return ReleaseReason.IDLE

            wait_s = min(self._timings.work_wait_s, self._reaper.remaining())
            try:
                delivery = await until_set(
                    self.queue.receive(wait_s, self._timings.visibility_s),
                    self._lease_lost,
                    self._stopping,
                )
            except QueueUnavailableError as e:
                logger.warning("work_queue_receive_failed", workstream=str(self.key), error=str(e))
                await self._pause()
                continue

            if delivery is None:
                if self.state is ConsumerState.INTERRUPTED:
                    self._transition(ConsumerState.IDLE_OWNED)
                continue
            if self._lease_lost.is_set() or self._stopping.is_set():
                await self._make_visible(delivery)
                continue
            await self._handle(delivery)

    # ═══════════════════════════════════════════════════════════════════════
    # MESSAGE HANDLING
    # ═══════════════════════════════════════════════════════════════════════

    async def _handle(self, delivery: Delivery[WorkMessage]) -> None:
        message = delivery.body
        self._reaper.reset()
        # Taken before the context switch: arrivals during a slow flush or
        # checkout must still preempt this message.
        baseline = await self._latest_arrival(default=message.arrival_order)

        if message.message_id in self._seen:
            await self._ack(delivery)
            await self._events.message_finished(str(self.key), message.message_id, "duplicate")
            return

        if not await self._renew():
            await self._make_visible(delivery)
            return

        started = time.monotonic()
        try:
            context = await self._sessions.ensure_context(self.key, message.thread_id)
        except ContextSwitchError as e:
            logger.error("context_activation_failed", workstream=str(self.key),
                         thread_id=message.thread_id, message_id=message.message_id, error=str(e))
            failed = ExecutionResult(success=False, summary=f"context activation failed: {e}")
            await self._finish(delivery, MessageOutcome.FAILED, failed, started)
            return
        except StoreUnavailableError as e:
            logger.warning("thread_store_unavailable", workstream=str(self.key),
                           message_id=message.message_id, error=str(e))
            await self._make_visible(delivery)
            await self._pause()
            return

        dispatched = await self._dispatch(delivery, context, baseline, started)
        if dispatched is not None:
            await self._finish(delivery, *dispatched)

    async def _dispatch(
        self,
        delivery: Delivery[WorkMessage],
        context: ContextHandle,
        baseline: int,
        started: float,
    ) -> _Dispatched | None:
        """Run the executor for one message and watch it.

        Returns None when the message must be left to the queue (lease lost
        or shutdown interrupted it).
        """
        message = delivery.body
        cancellation = CancellationSignal()
        request = ExecutionRequest(
            workstream_key=str(self.key),
            thread_id=message.thread_id,
            message_id=message.message_id,
            payload=message.payload,
            context=context,
            cancellation=cancellation,
            continuation_token=message.continuation_token,
        )
        task = asyncio.create_task(
            self._executor.execute(request), name=f"execute:{message.message_id}",
        )
        active = ActiveProcessingState(
            current_thread_id=message.thread_id,
            current_message_id=message.message_id,
            workstream_key=str(self.key),
            executor_task=task,
            cancellation=cancellation,
        )
        self.active = active
        self._transition(ConsumerState.DISPATCHING)
        await self._events.dispatched(str(self.key), message.message_id, message.thread_id)

        interrupt: InterruptResult | None = None
        waiters = [
            asyncio.ensure_future(self._lease_lost.wait()),
            asyncio.ensure_future(self._stopping.wait()),
        ]
        next_extend = time.monotonic() + self._timings.visibility_s / 2
        try:
            while not task.done():
                await asyncio.wait(
                    {task, *waiters},
                    timeout=self._timings.interrupt_poll_s,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if task.done():
                    break

                if self._lease_lost.is_set():
                    await self._hard_cancel(active)
                    await self._make_visible(delivery)
                    return None

                if self._stopping.is_set():
                    interrupt = await self._interrupts.on_new_message_while_busy(
                        active, reason="shutdown",
                    )
                    if interrupt.finished_anyway:
                        break
                    await self._make_visible(delivery)
                    return None

                if time.monotonic() >= next_extend:
                    await self._extend(delivery)
                    next_extend = time.monotonic() + self._timings.visibility_s / 2

                if await self._latest_arrival(default=baseline) > baseline:
                    self._transition(ConsumerState.INTERRUPTED)
                    interrupt = await self._interrupts.on_new_message_while_busy(
                        active, reason="newer_message",
                    )
                    break
        finally:
            for w in waiters:
                w.cancel()
            if not task.done():
                task.cancel()
            self.active = None

        if interrupt is not None:
            if interrupt.finished_anyway:
                return _outcome_of(interrupt.result), interrupt.result, started
            return MessageOutcome.PREEMPTED, interrupt.result, started

        if task.cancelled():
            return MessageOutcome.FAILED, ExecutionResult(success=False, summary="cancelled"), started
        exc = task.exception()
        if exc is not None:
            # Executor failure: the message counts as handled and is not retried.
            logger.error("executor_failed", workstream=str(self.key),
                         message_id=message.message_id, error=str(exc),
                         error_type=type(exc).__name__)
            return (
                MessageOutcome.FAILED,
                ExecutionResult(success=False, summary=f"executor error: {exc}"),
                started,
            )
        result = task.result()
        return _outcome_of(result), result, started

    async def _hard_cancel(self, active: ActiveProcessingState) -> None:
        """Stop the executor with no grace period.

        A cooperative stop lets the executor persist partial work, which is
        not allowed once the lease is gone.
        """
        task = active.executor_task
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=max(self._timings.grace_s, 0.05))
        if task in done and not task.cancelled():
            task.exception()
        logger.critical("executor_cancelled_after_lease_loss", workstream=str(self.key),
                        message_id=active.current_message_id, stopped=task in done)

    async def _finish(
        self,
        delivery: Delivery[WorkMessage],
        outcome: MessageOutcome,
        result: ExecutionResult | None,
        started: float,
    ) -> None:
        message = delivery.body

        if not await self._renew():
            logger.critical("result_discarded_after_lease_loss", workstream=str(self.key),
                            message_id=message.message_id, outcome=outcome.value)
            await self._make_visible(delivery)
            return

        try:
            await self._results.deliver(message, outcome, result)
        except ResultDeliveryError as e:
            logger.error("result_delivery_failed", workstream=str(self.key),
                         message_id=message.message_id, outcome=outcome.value, error=str(e))

        self._seen.add(message.message_id)
        await self._ack(delivery)
        await self._sessions.record_message(self.key, message.thread_id, message.message_id)
        self.messages_handled += 1
        await self._events.message_finished(
            str(self.key), message.message_id, outcome, (time.monotonic() - started) * 1000,
        )

        if outcome is not MessageOutcome.PREEMPTED:
            self._transition(ConsumerState.COMPLETED)
            self._transition(ConsumerState.IDLE_OWNED)
        self._reaper.reset()

    # ═══════════════════════════════════════════════════════════════════════
    # LEASE
    # ═══════════════════════════════════════════════════════════════════════

    async def _heartbeat(self) -> None:
        while not self._lease_lost.is_set():
            await asyncio.sleep(self._timings.heartbeat_s)
            await self._renew()

    async def _renew(self) -> bool:
        """Conditional lease extension. False once authority is gone."""
        if self._lease_lost.is_set():
            return False
        try:
            record = await self._store.renew(self.key, self.worker_id, self._timings.lease_s)
        except LeaseLostError as e:
            await self._lose_lease(str(e))
            return False
        except StoreUnavailableError as e:
            if self._clock() > self.lease_expires_at:
                await self._lose_lease(f"lease expired while store unavailable: {e}")
                return False
            await self._events.lease_renewal_failed(
                str(self.key), self.worker_id, str(e), authority_lost=False,
            )
            return True
        self.lease_expires_at = record.lease_expires_at
        return True

    async def _lose_lease(self, error: str) -> None:
        if self._lease_lost.is_set():
            return
        self._lease_lost.set()
        await self._events.lease_renewal_failed(
            str(self.key), self.worker_id, error, authority_lost=True,
        )

    # ═══════════════════════════════════════════════════════════════════════
    # RELEASE
    # ═══════════════════════════════════════════════════════════════════════

    async def _release(self, reason: ReleaseReason) -> None:
        self.release_reason = reason
        if reason is ReleaseReason.LEASE_LOST:
            # No authority: nothing may be persisted for this key any more.
            await self._sessions.release(self.key, flush=False)
            await self._events.released(str(self.key), self.worker_id, reason, False)
        else:
            await self._sessions.release(self.key)
            await self._reaper.release(reason)
        self._transition(ConsumerState.RELEASED)
        # Offers are only hints, so this is safe even when another worker
        # already holds the key.
        await self._reannounce()

    async def _reannounce(self) -> None:
        """Publish a fresh ClaimOffer if work is still queued for this key."""
        try:
            pending = await self.queue.pending_count()
            if pending == 0:
                return
            await self._offers.publish(ClaimOffer(str(self.key), self.queue.handle))
        except QueueUnavailableError as e:
            logger.error("reannounce_failed", workstream=str(self.key), error=str(e))
            return
        logger.info("workstream_reannounced", workstream=str(self.key), pending=pending)

    # ═══════════════════════════════════════════════════════════════════════
    # QUEUE HELPERS
    # ═══════════════════════════════════════════════════════════════════════

    async def _ack(self, delivery: Delivery[WorkMessage]) -> None:
        try:
            acked = await self.queue.ack(delivery.receipt)
        except QueueUnavailableError as e:
            logger.error("work_ack_failed", workstream=str(self.key),
                         message_id=delivery.body.message_id, error=str(e))
            return
        if not acked:
            logger.warning("work_ack_stale_receipt", workstream=str(self.key),
                           message_id=delivery.body.message_id)

    async def _extend(self, delivery: Delivery[WorkMessage]) -> None:
        try:
            await self.queue.extend(delivery.receipt, self._timings.visibility_s)
        except QueueUnavailableError as e:
            logger.warning("visibility_extend_failed", workstream=str(self.key),
                           message_id=delivery.body.message_id, error=str(e))

    async def _make_visible(self, delivery: Delivery[WorkMessage]) -> None:
        """Hand an unfinished delivery straight back to the queue."""
        try:
            await self.queue.extend(delivery.receipt, 0)
        except QueueUnavailableError as e:
            logger.warning("visibility_reset_failed", workstream=str(self.key),
                           message_id=delivery.body.message_id, error=str(e))

    async def _latest_arrival(self, default: int) -> int:
        try:
            return await self.queue.latest_arrival()
        except QueueUnavailableError as e:
            logger.warning("arrival_check_failed", workstream=str(self.key), error=str(e))
            return default

    async def _pause(self) -> None:
        await until_set(
            asyncio.sleep(self._timings.interrupt_poll_s), self._lease_lost, self._stopping,
        )
