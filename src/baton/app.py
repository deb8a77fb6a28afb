"""Baton worker entry point: claim loop + FastAPI status surface.

Architecture:
- Worker (claim broker + consumers) on the main event loop
- SQL-backed ownership store, thread contexts and queues
- Git context backend, subprocess task executor
- FastAPI (served by uvicorn when --http-port is set) for health and status
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from baton.config import Settings, settings
from baton.context.git import GitContextBackend
from baton.core.results import HttpResultSink, LoggingResultSink, ResultSink
from baton.core.worker import Worker
from baton.db.session import close_db, get_engine, get_session_factory, init_db
from baton.executors.subprocess import SubprocessExecutor
from baton.observability.events import RecordingEventSink
from baton.observability.health import get_health
from baton.observability.metrics import get_metrics
from baton.queues.sql import SqlQueueRouter
from baton.store.ownership import SqlOwnershipStore
from baton.store.threads import SqlThreadContextStore

logger = structlog.get_logger()


def configure_logging(level: str = "INFO", env: str = "development") -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
            if env == "production"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════════

_worker: Worker | None = None


def set_worker(worker: Worker | None) -> None:
    global _worker
    _worker = worker


def get_worker() -> Worker | None:
    return _worker


api = FastAPI(
    title="Baton",
    version="0.1.0",
    description="Workstream ownership and interrupt-driven dispatch",
)


@api.get("/health")
async def health() -> JSONResponse:
    """ok while every dependency answers; 503 once one is degraded."""
    registry = get_health()
    snap = registry.snapshot()
    degraded = registry.degraded
    worker = get_worker()
    body: dict[str, Any] = {
        "status": snap["status"],
        "degraded": degraded,
        "service": "baton",
        "worker_id": worker.worker_id if worker else None,
        "running": worker.running if worker else False,
        "dependencies": snap["dependencies"],
    }
    return JSONResponse(body, status_code=503 if degraded else 200)


@api.get("/metrics")
async def metrics_endpoint() -> dict:
    """Counters and latency histograms for claims, interrupts, releases and messages."""
    return await get_metrics().snapshot()


@api.get("/workstreams")
async def workstreams() -> dict:
    """This worker's current claims and recent coordination events."""
    worker = get_worker()
    if worker is None:
        return {"worker_id": None, "claims": [], "events": []}
    status = worker.status()
    events = worker.events
    if isinstance(events, RecordingEventSink):
        status["events"] = [{"event": name, **fields} for name, fields in events.trace[-50:]]
    return status


# ═══════════════════════════════════════════════════════════════════════════════
# MAIN ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════════

def build_worker(cfg: Settings) -> tuple[Worker, ResultSink]:
    """Wire the SQL-backed worker from settings."""
    if not cfg.executor_command:
        raise SystemExit("BATON_EXECUTOR_COMMAND is not set")

    engine = get_engine()
    sessions = get_session_factory()
    results: ResultSink = (
        HttpResultSink(cfg.callback_url, timeout_s=cfg.callback_timeout_s)
        if cfg.callback_url
        else LoggingResultSink()
    )
    worker = Worker(
        cfg.worker_id,
        store=SqlOwnershipStore(engine, sessions),
        router=SqlQueueRouter(
            engine, sessions,
            dedup_window_s=cfg.dedup_window_s,
            poll_interval_s=cfg.queue_poll_interval_s,
        ),
        threads=SqlThreadContextStore(engine, sessions),
        backend=GitContextBackend(
            cfg.workspace_root,
            remote=cfg.git_remote,
            push=cfg.git_push_enabled,
            protected_branches=cfg.protected_branches,
        ),
        executor=SubprocessExecutor(cfg.executor_command,
                                    max_output_chars=cfg.executor_max_output_chars),
        results=results,
        timings=cfg.lease_timings(),
        events=RecordingEventSink(get_metrics(), max_events=500),
        max_concurrent_claims=cfg.max_concurrent_claims,
    )
    return worker, results


async def _serve(cfg: Settings, create_tables: bool) -> None:
    if create_tables:
        await init_db()
        logger.info("database_initialized")

    worker, results = build_worker(cfg)
    set_worker(worker)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await worker.start()

    server: uvicorn.Server | None = None
    server_task: asyncio.Task[None] | None = None
    stop_waiter = asyncio.ensure_future(stop_requested.wait())
    waiters: set[asyncio.Future[Any]] = {stop_waiter}
    if cfg.http_port:
        server = uvicorn.Server(uvicorn.Config(
            api, host="0.0.0.0", port=cfg.http_port, log_level=cfg.log_level.lower(),
        ))
        server_task = asyncio.create_task(server.serve(), name="http-server")
        waiters.add(server_task)
        logger.info("http_server_starting", port=cfg.http_port)

    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        logger.info("shutdown_requested", worker_id=cfg.worker_id)
        await worker.stop()
    finally:
        stop_waiter.cancel()
        if server is not None and server_task is not None:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
        await results.close()
        await close_db()
        set_worker(None)


def main() -> None:
    parser = argparse.ArgumentParser(description="Baton workstream worker")
    parser.add_argument("--worker-id", default=None, help="Worker identity (default: generated)")
    parser.add_argument("--max-claims", type=int, default=None,
                        help="Max concurrent workstream claims for this worker")
    parser.add_argument("--http-port", type=int, default=None,
                        help="Serve /health, /metrics and /workstreams on this port")
    parser.add_argument("--init-db", action="store_true",
                        help="Create tables before starting (dev only; use alembic in production)")
    args = parser.parse_args()

    if args.worker_id:
        settings.worker_id = args.worker_id
    if args.max_claims is not None:
        settings.max_concurrent_claims = max(1, args.max_claims)
    if args.http_port is not None:
        settings.http_port = args.http_port

    configure_logging(settings.log_level, settings.env)
    logger.info("starting_baton_worker", worker_id=settings.worker_id, env=settings.env)
    asyncio.run(_serve(settings, args.init_db))


if __name__ == "__main__":
    main()
