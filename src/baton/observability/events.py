"""Structured observability events for the coordination protocol.

One method per event. Each writes a single structlog line and updates the
metrics collector, so log-based alerting and /metrics agree:

    claimed / claim_rejected     claim broker outcomes
    interrupted                  cooperative (ack) or forced-interrupt
    released                     idle, lease loss, or shutdown
    lease_renewal_failed         authority lost or store unreachable
    context_flush_failed         a thread switch proceeded without a flush
    message_finished             completed / failed / preempted / duplicate

``RecordingEventSink`` also keeps the ordered event trace in memory for
tests and the /workstreams endpoint.
"""

from __future__ import annotations

import time
from typing import Any

import structlog

from baton.core.types import InterruptOutcome, MessageOutcome, ReleaseReason
from baton.observability.metrics import MetricsCollector, get_metrics

logger = structlog.get_logger()


class EventSink:
    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self.metrics = metrics or get_metrics()

    def _record(self, event: str, fields: dict[str, Any]) -> None:
        """Hook for subclasses that keep the trace."""

    async def claimed(self, workstream_key: str, worker_id: str, latency_ms: float) -> None:
        self._record("claimed", {"workstream": workstream_key, "worker_id": worker_id})
        logger.info("workstream_claimed", workstream=workstream_key, worker_id=worker_id,
                    latency_ms=round(latency_ms, 1))
        await self.metrics.claim_attempted("claimed", latency_ms)

    async def claim_rejected(self, workstream_key: str, worker_id: str, reason: str) -> None:
        self._record("claim_rejected", {"workstream": workstream_key, "worker_id": worker_id,
                                        "reason": reason})
        if reason == "already_owned":
            logger.info("workstream_claim_lost", workstream=workstream_key, worker_id=worker_id)
        else:
            logger.warning("workstream_claim_failed", workstream=workstream_key,
                           worker_id=worker_id, reason=reason)
        await self.metrics.claim_attempted(reason)

    async def interrupted(
        self,
        workstream_key: str,
        message_id: str,
        outcome: InterruptOutcome,
        stop_ms: float,
        reason: str,
    ) -> None:
        self._record("interrupted", {"workstream": workstream_key, "message_id": message_id,
                                     "outcome": outcome.value, "reason": reason})
        if outcome is InterruptOutcome.FORCED:
            logger.error(
                "forced_interrupt",
                workstream=workstream_key,
                message_id=message_id,
                stop_ms=round(stop_ms, 1),
                reason=reason,
                forced_total=self.metrics.forced_interrupts(workstream_key) + 1,
            )
        else:
            logger.info("cooperative_interrupt", workstream=workstream_key,
                        message_id=message_id, stop_ms=round(stop_ms, 1), reason=reason)
        await self.metrics.interrupted(workstream_key, outcome.value, stop_ms)

    async def released(self, workstream_key: str, worker_id: str, reason: ReleaseReason,
                       deleted: bool) -> None:
        self._record("released", {"workstream": workstream_key, "worker_id": worker_id,
                                  "reason": reason.value, "deleted": deleted})
        logger.info("workstream_released", workstream=workstream_key, worker_id=worker_id,
                    reason=reason.value, record_deleted=deleted)
        await self.metrics.released(reason.value)

    async def lease_renewal_failed(self, workstream_key: str, worker_id: str, error: str,
                                   authority_lost: bool) -> None:
        self._record("lease_renewal_failed", {"workstream": workstream_key,
                                              "worker_id": worker_id,
                                              "authority_lost": authority_lost})
        if authority_lost:
            logger.critical("lease_lost", workstream=workstream_key, worker_id=worker_id,
                            error=error)
        else:
            logger.warning("lease_renewal_deferred", workstream=workstream_key,
                           worker_id=worker_id, error=error)
        await self.metrics.lease_renewal_failed()

    async def context_flush_failed(self, workstream_key: str, thread_id: str, error: str) -> None:
        self._record("context_flush_failed", {"workstream": workstream_key, "thread_id": thread_id})
        logger.error("context_flush_failed_switching_anyway", workstream=workstream_key,
                     previous_thread=thread_id, error=error)
        await self.metrics.context_flush_failed()

    async def message_finished(
        self,
        workstream_key: str,
        message_id: str,
        outcome: MessageOutcome | str,
        elapsed_ms: float | None = None,
    ) -> None:
        value = outcome.value if isinstance(outcome, MessageOutcome) else outcome
        self._record("message_finished", {"workstream": workstream_key,
                                          "message_id": message_id, "outcome": value})
        logger.info("message_finished", workstream=workstream_key, message_id=message_id,
                    outcome=value, elapsed_ms=elapsed_ms)
        await self.metrics.message_finished(value, elapsed_ms)

    async def dispatched(self, workstream_key: str, message_id: str, thread_id: str) -> None:
        self._record("dispatched", {"workstream": workstream_key, "message_id": message_id,
                                    "thread_id": thread_id})
        logger.info("message_dispatched", workstream=workstream_key, message_id=message_id,
                    thread_id=thread_id)


class RecordingEventSink(EventSink):
    """EventSink that also keeps ``(event, fields)`` tuples in order."""

    def __init__(self, metrics: MetricsCollector | None = None, max_events: int = 1000) -> None:
        super().__init__(metrics or MetricsCollector())
        self.trace: list[tuple[str, dict[str, Any]]] = []
        self._max_events = max_events

    def _record(self, event: str, fields: dict[str, Any]) -> None:
        self.trace.append((event, {**fields, "at": time.time()}))
        if len(self.trace) > self._max_events:
            del self.trace[: len(self.trace) - self._max_events]

    def names(self) -> list[str]:
        return [name for name, _ in self.trace]

    def of(self, event: str) -> list[dict[str, Any]]:
        return [fields for name, fields in self.trace if name == event]
