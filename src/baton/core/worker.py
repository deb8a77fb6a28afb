"""Worker: one Claim Broker plus the Work Consumers for its current claims.

A worker owns nothing at start. The broker claims keys from offers; each
claim gets a WorkConsumer task that holds one capacity slot until it
releases. Consumers and the broker never block each other: they only
share the capacity semaphore and the SessionManager.

Shutdown (``stop``):
    stop the broker → ask every consumer to stop (in-flight work gets the
    cooperative interrupt) → wait for consumers to release their claims
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog

from baton.config import LeaseTimings
from baton.context.base import ContextBackend
from baton.core.claim_broker import ClaimBroker
from baton.core.consumer import WorkConsumer
from baton.core.executor import TaskExecutor
from baton.core.results import ResultSink
from baton.core.sessions import SessionManager
from baton.core.types import ConsumerState, OwnershipRecord, ReleaseReason, WorkstreamKey
from baton.observability.events import EventSink
from baton.queues.base import QueueRouter
from baton.store.ownership import OwnershipStore
from baton.store.threads import ThreadContextStore

logger = structlog.get_logger()


class Worker:
    def __init__(
        self,
        worker_id: str,
        *,
        store: OwnershipStore,
        router: QueueRouter,
        threads: ThreadContextStore,
        backend: ContextBackend,
        executor: TaskExecutor,
        results: ResultSink,
        timings: LeaseTimings,
        events: EventSink | None = None,
        max_concurrent_claims: int = 1,
    ) -> None:
        self.worker_id = worker_id
        self.timings = timings
        self.events = events or EventSink()
        self.max_concurrent_claims = max(1, max_concurrent_claims)
        self._store = store
        self._router = router
        self._executor = executor
        self._results = results
        self.sessions = SessionManager(backend, threads, self.events)

        self._capacity = asyncio.Semaphore(self.max_concurrent_claims)
        self.broker = ClaimBroker(
            worker_id,
            store=store,
            offers=router.offers,
            events=self.events,
            timings=timings,
            capacity=self._capacity,
            on_claimed=self._start_consumer,
            is_running=self._is_consuming,
        )
        self.consumers: dict[str, WorkConsumer] = {}
        self._consumer_tasks: dict[str, asyncio.Task[ReleaseReason]] = {}
        self._broker_task: asyncio.Task[None] | None = None
        self.released: list[tuple[str, ReleaseReason]] = []
        self.started_at: float | None = None

    @property
    def running(self) -> bool:
        return self._broker_task is not None and not self._broker_task.done()

    async def start(self) -> None:
        if self.running:
            return
        self.started_at = time.time()
        self._broker_task = asyncio.create_task(self.broker.run(), name=f"broker:{self.worker_id}")
        logger.info(
            "worker_started",
            worker_id=self.worker_id,
            max_concurrent_claims=self.max_concurrent_claims,
            lease_s=self.timings.lease_s,
            idle_s=self.timings.idle_s,
        )

    async def run(self) -> None:
        """Start and block until the broker loop ends (after ``stop``)."""
        await self.start()
        assert self._broker_task is not None
        await self._broker_task

    async def stop(self, timeout: float | None = None) -> None:
        """Graceful shutdown: interrupt in-flight work and release every claim."""
        logger.info("worker_stopping", worker_id=self.worker_id, claims=list(self.consumers))
        if timeout is None:
            # Poll interval to notice the stop, grace, hard-cancel wait, then release.
            timeout = self.timings.interrupt_poll_s + 2 * self.timings.grace_s + 30.0

        # Broker first: a claim landing mid-shutdown must still get its consumer stopped.
        self.broker.stop()
        if self._broker_task is not None:
            await self._wait_or_cancel([self._broker_task], timeout)

        for consumer in list(self.consumers.values()):
            consumer.stop()
        await self._wait_or_cancel(list(self._consumer_tasks.values()), timeout)
        logger.info("worker_stopped", worker_id=self.worker_id, released=len(self.released))

    async def _wait_or_cancel(self, tasks: list[asyncio.Task[Any]], timeout: float) -> None:
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.error("worker_stop_timeout", worker_id=self.worker_id, task=task.get_name())
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def status(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "running": self.running,
            "started_at": self.started_at,
            "max_concurrent_claims": self.max_concurrent_claims,
            "claims": [c.status() for c in self.consumers.values()],
            "released": [{"workstream": k, "reason": r.value} for k, r in self.released[-20:]],
        }

    def _is_consuming(self, key: WorkstreamKey) -> bool:
        consumer = self.consumers.get(str(key))
        return consumer is not None and consumer.state is not ConsumerState.RELEASED

    def _start_consumer(self, key: WorkstreamKey, record: OwnershipRecord) -> None:
        consumer = WorkConsumer(
            key,
            self.worker_id,
            record,
            store=self._store,
            router=self._router,
            sessions=self.sessions,
            executor=self._executor,
            results=self._results,
            events=self.events,
            timings=self.timings,
        )
        self.consumers[str(key)] = consumer
        self._consumer_tasks[str(key)] = asyncio.create_task(
            self._run_consumer(consumer), name=f"consumer:{key}",
        )

    async def _run_consumer(self, consumer: WorkConsumer) -> ReleaseReason:
        key = str(consumer.key)
        reason = ReleaseReason.ERROR
        try:
            reason = await consumer.run()
            return reason
        finally:
            # A re-claim of the same key may already have replaced these entries.
            if self.consumers.get(key) is consumer:
                del self.consumers[key]
            if self._consumer_tasks.get(key) is asyncio.current_task():
                del self._consumer_tasks[key]
            self.released.append((key, reason))
            self._capacity.release()
            logger.info("consumer_finished", worker_id=self.worker_id, workstream=key,
                        reason=reason.value, messages=consumer.messages_handled)
