"""Dependency health for the store and queue backends.

Clients already retry transient failures with backoff; what reaches this
module is a call that failed *after* retries. Each dependency flips to
degraded once consecutive failures reach its threshold, and back to
healthy on the first success:

    HEALTHY  ──(failures >= threshold)──► DEGRADED
    DEGRADED ──(one success)────────────► HEALTHY

Degraded dependencies are surfaced by /health. Nothing here blocks calls:
sustained unavailability is a signal, never a reason to stop the worker.
"""

from __future__ import annotations

import time
from typing import Any

import structlog

logger = structlog.get_logger()

DEPENDENCIES: tuple[str, ...] = ("store", "offers", "work_queue")


class DependencyHealth:
    """Consecutive-failure tracker for one named dependency."""

    __slots__ = (
        "name",
        "failure_threshold",
        "_failure_count",
        "_last_failure_time",
        "_last_error",
    )

    def __init__(self, name: str, failure_threshold: int = 3) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self._failure_count: int = 0
        self._last_failure_time: float = 0.0
        self._last_error: str | None = None

    @property
    def degraded(self) -> bool:
        return self._failure_count >= self.failure_threshold

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def record_success(self) -> None:
        if self.degraded:
            logger.info(
                "dependency_recovered",
                dependency=self.name,
                previous_failures=self._failure_count,
            )
        self._failure_count = 0
        self._last_error = None

    def record_failure(self, error: BaseException | str) -> None:
        self._failure_count += 1
        self._last_failure_time = time.time()
        self._last_error = str(error)
        if self._failure_count == self.failure_threshold:
            logger.error(
                "dependency_degraded",
                dependency=self.name,
                failures=self._failure_count,
                error=self._last_error,
            )

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": "degraded" if self.degraded else "ok",
            "consecutive_failures": self._failure_count,
            "last_failure_at": self._last_failure_time or None,
            "last_error": self._last_error,
        }


class HealthRegistry:
    def __init__(self, failure_threshold: int = 3) -> None:
        self._failure_threshold = failure_threshold
        self._deps: dict[str, DependencyHealth] = {
            name: DependencyHealth(name, failure_threshold) for name in DEPENDENCIES
        }

    def get(self, name: str) -> DependencyHealth:
        if name not in self._deps:
            self._deps[name] = DependencyHealth(name, self._failure_threshold)
        return self._deps[name]

    @property
    def degraded(self) -> list[str]:
        return [name for name, dep in self._deps.items() if dep.degraded]

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": "degraded" if self.degraded else "ok",
            "dependencies": {name: dep.snapshot() for name, dep in self._deps.items()},
        }


_registry: HealthRegistry | None = None


def get_health() -> HealthRegistry:
    """Return (or lazily create) the process-global HealthRegistry."""
    global _registry
    if _registry is None:
        _registry = HealthRegistry()
    return _registry
