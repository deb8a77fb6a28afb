"""Claim, interrupt and release metrics for a worker process.

Counters are keyed by ``(name, label)``; a counter recorded without a label
is exported under ``counters``, labeled ones under ``labeled_counters``.
Latency histograms use fixed millisecond buckets and also keep the observed
min/max so percentile estimates never leave the range actually seen.

One collector per process (``get_metrics()``), exported on /metrics.
"""

from __future__ import annotations

import asyncio
import bisect
import math
import time
from collections import Counter
from typing import Any

LATENCY_BOUNDS_MS: tuple[float, ...] = (
    5, 10, 25, 50, 100, 250, 500, 1_000, 2_500, 5_000,
    10_000, 30_000, 60_000, 300_000, math.inf,
)

CLAIM_LATENCY = "claim_latency_ms"
DISPATCH_LATENCY = "dispatch_latency_ms"
INTERRUPT_STOP = "interrupt_stop_ms"


# ═══════════════════════════════════════════════════════════════════════════════
# HISTOGRAM
# ═══════════════════════════════════════════════════════════════════════════════

class Histogram:
    """Bucketed latency distribution."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.reset()

    def reset(self) -> None:
        self.counts = [0] * len(LATENCY_BOUNDS_MS)
        self.count = 0
        self.total_ms = 0.0
        self.min_ms = math.inf
        self.max_ms = 0.0

    def observe(self, value_ms: float) -> None:
        self.counts[bisect.bisect_left(LATENCY_BOUNDS_MS, value_ms)] += 1
        self.count += 1
        self.total_ms += value_ms
        self.min_ms = min(self.min_ms, value_ms)
        self.max_ms = max(self.max_ms, value_ms)

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def percentile(self, p: float) -> float:
        """Interpolate inside the bucket holding the p-th ranked sample."""
        if not self.count:
            return 0.0
        rank = max(1, math.ceil(p / 100 * self.count))
        seen = 0
        for i, n in enumerate(self.counts):
            if n and seen + n >= rank:
                lower = max(LATENCY_BOUNDS_MS[i - 1] if i else 0.0, self.min_ms)
                upper = min(LATENCY_BOUNDS_MS[i], self.max_ms)
                return lower + (rank - seen) / n * (upper - lower)
            seen += n
        return self.max_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "min_ms": round(self.min_ms, 2) if self.count else 0,
            "max_ms": round(self.max_ms, 2),
            "mean_ms": round(self.mean_ms, 2),
            "p50_ms": round(self.percentile(50), 2),
            "p95_ms": round(self.percentile(95), 2),
            "p99_ms": round(self.percentile(99), 2),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# COLLECTOR
# ═══════════════════════════════════════════════════════════════════════════════

class MetricsCollector:
    """Counters and latency histograms for one worker.

    Counters:
        claims_total[outcome]                     claimed / already_owned / error
        interrupts_total[outcome]                 ack / forced
        forced_interrupts_by_workstream[key]      executor ignoring cancellation
        releases_total[reason]                    idle / lease_lost / shutdown
        lease_renewal_failures_total
        messages_total[outcome]                   completed / failed / preempted / duplicate
        context_flush_failures_total

    Histograms (milliseconds):
        claim_latency_ms        one conditional claim write
        dispatch_latency_ms     executor invocation, dispatch to return
        interrupt_stop_ms       stop signal to executor stopped
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._counts: Counter[tuple[str, str]] = Counter()
        self._histograms = {
            name: Histogram(name) for name in (CLAIM_LATENCY, DISPATCH_LATENCY, INTERRUPT_STOP)
        }
        self._started_at = time.monotonic()

    async def inc(self, name: str, label: str = "", value: int = 1) -> None:
        async with self._lock:
            self._counts[(name, label)] += value

    async def observe(self, histogram: str, value_ms: float) -> None:
        async with self._lock:
            hist = self._histograms.get(histogram)
            if hist is not None:
                hist.observe(value_ms)

    # ── Event helpers ──────────────────────────────────────────────────────

    async def claim_attempted(self, outcome: str, latency_ms: float | None = None) -> None:
        await self.inc("claims_total", outcome)
        if latency_ms is not None:
            await self.observe(CLAIM_LATENCY, latency_ms)

    async def interrupted(self, workstream_key: str, outcome: str, stop_ms: float) -> None:
        await self.inc("interrupts_total", outcome)
        await self.observe(INTERRUPT_STOP, stop_ms)
        if outcome == "forced":
            await self.inc("forced_interrupts_by_workstream", workstream_key)

    async def released(self, reason: str) -> None:
        await self.inc("releases_total", reason)

    async def lease_renewal_failed(self) -> None:
        await self.inc("lease_renewal_failures_total")

    async def message_finished(self, outcome: str, elapsed_ms: float | None = None) -> None:
        await self.inc("messages_total", outcome)
        if elapsed_ms is not None:
            await self.observe(DISPATCH_LATENCY, elapsed_ms)

    async def context_flush_failed(self) -> None:
        await self.inc("context_flush_failures_total")

    def forced_interrupts(self, workstream_key: str) -> int:
        return self._counts[("forced_interrupts_by_workstream", workstream_key)]

    # ── Export ─────────────────────────────────────────────────────────────

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            return self.export()

    def export(self) -> dict[str, Any]:
        counters: dict[str, int] = {}
        labeled: dict[str, dict[str, int]] = {}
        for (name, label), value in sorted(self._counts.items()):
            if label:
                labeled.setdefault(name, {})[label] = value
            else:
                counters[name] = value
        return {
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
            "counters": counters,
            "labeled_counters": labeled,
            "histograms": {name: h.to_dict() for name, h in self._histograms.items()},
        }

    def reset(self) -> None:
        self._counts.clear()
        for hist in self._histograms.values():
            hist.reset()


_collector: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
