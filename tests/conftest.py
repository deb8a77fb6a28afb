"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                          # Run all tests
    pytest tests/test_consumer.py -v       # Run specific test file

Everything runs against the in-memory store and queues unless a test asks
for ``sql_engine`` (aiosqlite in a temp directory). Timings are scaled
down so a full claim → dispatch → idle release cycle takes well under a
second.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, AsyncGenerator, Callable

import pytest
import pytest_asyncio

from baton.config import LeaseTimings
from baton.context.base import ContextBackend
from baton.core.consumer import WorkConsumer
from baton.core.errors import ContextSwitchError, ResultDeliveryError
from baton.core.executor import ExecutionRequest, ExecutionResult
from baton.core.results import ResultSink
from baton.core.sessions import SessionManager
from baton.core.types import (
    ClaimResult,
    ContextHandle,
    MessageOutcome,
    ThreadContext,
    WorkMessage,
    WorkstreamKey,
)
from baton.core.worker import Worker
from baton.db.session import create_engine, init_db
from baton.observability import health as health_module
from baton.observability.events import RecordingEventSink
from baton.observability.health import HealthRegistry
from baton.observability.metrics import MetricsCollector
from baton.queues.memory import InMemoryQueueRouter
from baton.store.ownership import InMemoryOwnershipStore
from baton.store.threads import InMemoryThreadContextStore


KEY = WorkstreamKey("p1", "u1")


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class ManualClock:
    """Wall clock that only moves when a test says so."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0,
                     interval: float = 0.01) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout``."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError(f"condition not met within {timeout}s")


def message(message_id: str, thread_id: str = "t1", key: WorkstreamKey = KEY,
            **payload: Any) -> WorkMessage:
    return WorkMessage(
        message_id=message_id,
        workstream_key=str(key),
        thread_id=thread_id,
        payload=payload or {"instruction": f"do {message_id}"},
    )


class RecordingContextBackend(ContextBackend):
    """Context backend that records every call into a shared ``calls`` list."""

    def __init__(self, calls: list[tuple[str, str]] | None = None) -> None:
        self.calls = calls if calls is not None else []
        self.fail_flush: set[str] = set()
        self.fail_activate: set[str] = set()

    async def activate(self, key: WorkstreamKey, context: ThreadContext) -> ContextHandle:
        if context.thread_id in self.fail_activate:
            raise ContextSwitchError(f"cannot check out {context.context_id}",
                                     thread_id=context.thread_id)
        self.calls.append(("activate", context.thread_id))
        return ContextHandle(str(key), context.thread_id, context.context_id)

    async def flush(self, handle: ContextHandle, *, reason: str) -> bool:
        if handle.thread_id in self.fail_flush:
            raise ContextSwitchError(f"cannot commit {handle.context_id}",
                                     thread_id=handle.thread_id)
        self.calls.append(("flush", handle.thread_id))
        return True


class RecordingResultSink(ResultSink):
    def __init__(self) -> None:
        self.delivered: list[tuple[str, MessageOutcome, ExecutionResult | None]] = []
        self.fail = False

    async def deliver(self, message, outcome, result):
        if self.fail:
            raise ResultDeliveryError("callback down", status_code=503)
        self.delivered.append((message.message_id, outcome, result))

    def outcomes(self) -> dict[str, MessageOutcome]:
        return {mid: outcome for mid, outcome, _ in self.delivered}


class ScriptedExecutor:
    """Task executor whose behavior is scripted per message id.

    ``durations``   seconds a message "works" before succeeding
    ``stubborn``    ids that ignore the cancellation signal
    ``fail``        ids that raise instead of returning
    ``hooks``       callables run when a message starts
    """

    def __init__(self, default_s: float = 0.0) -> None:
        self.default_s = default_s
        self.durations: dict[str, float] = {}
        self.stubborn: set[str] = set()
        self.fail: set[str] = set()
        self.hooks: dict[str, Callable[[ExecutionRequest], Any]] = {}
        self.started: list[str] = []
        self.finished: list[str] = []
        self.acknowledged: list[str] = []
        self.hard_cancelled: list[str] = []
        self.requests: dict[str, ExecutionRequest] = {}
        self.started_at: dict[str, float] = {}

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        mid = request.message_id
        self.started.append(mid)
        self.started_at[mid] = time.monotonic()
        self.requests[mid] = request
        hook = self.hooks.get(mid)
        if hook is not None:
            hook(request)
        if mid in self.fail:
            raise RuntimeError(f"executor blew up on {mid}")

        duration = self.durations.get(mid, self.default_s)
        try:
            if mid in self.stubborn:
                await asyncio.sleep(duration)
            else:
                sleeper = asyncio.ensure_future(asyncio.sleep(duration))
                stop = asyncio.ensure_future(request.cancellation.wait())
                try:
                    await asyncio.wait({sleeper, stop}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    sleeper.cancel()
                    stop.cancel()
                if request.cancellation.requested:
                    self.acknowledged.append(mid)
                    return ExecutionResult(success=False, cancelled=True,
                                           summary=f"stopped {mid}", committed=True)
        except asyncio.CancelledError:
            self.hard_cancelled.append(mid)
            raise
        self.finished.append(mid)
        return ExecutionResult(success=True, summary=f"did {mid}", committed=True)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture()
def timings() -> LeaseTimings:
    return LeaseTimings(
        lease_s=1.0,
        heartbeat_s=0.2,
        grace_s=0.2,
        idle_s=0.5,
        interrupt_poll_s=0.02,
        offer_wait_s=0.05,
        work_wait_s=0.05,
        visibility_s=5.0,
    )


@pytest.fixture()
def store() -> InMemoryOwnershipStore:
    return InMemoryOwnershipStore()


@pytest.fixture()
def router() -> InMemoryQueueRouter:
    return InMemoryQueueRouter()


@pytest.fixture()
def threads() -> InMemoryThreadContextStore:
    return InMemoryThreadContextStore()


@pytest.fixture()
def backend() -> RecordingContextBackend:
    return RecordingContextBackend()


@pytest.fixture()
def events() -> RecordingEventSink:
    return RecordingEventSink(MetricsCollector())


@pytest.fixture()
def results() -> RecordingResultSink:
    return RecordingResultSink()


@pytest.fixture()
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture()
def sessions(backend, threads, events) -> SessionManager:
    return SessionManager(backend, threads, events)


@pytest.fixture()
def fresh_health(monkeypatch) -> HealthRegistry:
    """Swap the process-global health registry for a clean one."""
    registry = HealthRegistry()
    monkeypatch.setattr(health_module, "_registry", registry)
    return registry


@pytest_asyncio.fixture
async def start_consumer(store, router, sessions, executor, results, events, timings):
    """Claim KEY for ``worker_id`` and run a WorkConsumer for it in the background."""
    running: list[tuple[WorkConsumer, asyncio.Task]] = []

    async def _start(worker_id: str = "w1", **overrides: Any) -> tuple[WorkConsumer, asyncio.Task]:
        kwargs: dict[str, Any] = dict(
            store=store, router=router, sessions=sessions, executor=executor,
            results=results, events=events, timings=timings,
        )
        kwargs.update(overrides)
        outcome, record = await kwargs["store"].try_claim(KEY, worker_id, kwargs["timings"].lease_s)
        assert outcome is ClaimResult.CLAIMED
        consumer = WorkConsumer(KEY, worker_id, record, **kwargs)
        task = asyncio.create_task(consumer.run())
        running.append((consumer, task))
        return consumer, task

    yield _start

    for consumer, task in running:
        consumer.stop()
    await asyncio.gather(*(t for _, t in running), return_exceptions=True)


@pytest_asyncio.fixture
async def make_worker(store, router, threads, backend, executor, results, timings):
    """Build Workers sharing one store and router; every worker is stopped on teardown."""
    workers: list[Worker] = []

    def _make(worker_id: str = "w1", **overrides: Any) -> Worker:
        kwargs: dict[str, Any] = dict(
            store=store, router=router, threads=threads, backend=backend,
            executor=executor, results=results, timings=timings,
            events=RecordingEventSink(MetricsCollector()),
        )
        kwargs.update(overrides)
        worker = Worker(worker_id, **kwargs)
        workers.append(worker)
        return worker

    yield _make

    for worker in workers:
        await worker.stop(timeout=5.0)


@pytest_asyncio.fixture
async def sql_engine(tmp_path: Path) -> AsyncGenerator:
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'baton.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()
