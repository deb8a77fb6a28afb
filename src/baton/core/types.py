"""Shared data model for workstream ownership and dispatch.

Records that cross a process boundary (ownership rows, offers, work
messages, thread contexts) are frozen dataclasses. ``ActiveProcessingState``
is the only mutable, in-memory record and never leaves its Work Consumer.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from baton.core.executor import CancellationSignal, ExecutionResult

KEY_SEPARATOR = "#"


@dataclass(frozen=True, order=True)
class WorkstreamKey:
    """Isolation unit: one project + one user, rendered as ``project#user``."""

    project_id: str
    user_id: str

    def __post_init__(self) -> None:
        for part in (self.project_id, self.user_id):
            if not part or KEY_SEPARATOR in part:
                raise ValueError(f"Invalid workstream key component: {part!r}")

    def __str__(self) -> str:
        return f"{self.project_id}{KEY_SEPARATOR}{self.user_id}"

    @classmethod
    def parse(cls, value: str | WorkstreamKey) -> WorkstreamKey:
        if isinstance(value, WorkstreamKey):
            return value
        project_id, sep, user_id = value.partition(KEY_SEPARATOR)
        if not sep:
            raise ValueError(f"Workstream key must look like 'project#user', got {value!r}")
        return cls(project_id, user_id)


# ═══════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════

class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_OWNED = "already_owned"


class ConsumerState(str, Enum):
    """Work Consumer lifecycle.

    IDLE_OWNED → DISPATCHING → (COMPLETED → IDLE_OWNED)
                             | (INTERRUPTED → DISPATCHING[next])
    ... → RELEASED (terminal)
    """
    IDLE_OWNED = "idle_owned"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    RELEASED = "released"


class InterruptOutcome(str, Enum):
    ACK = "ack"          # executor stopped within the grace period
    FORCED = "forced"    # grace period elapsed, executor hard-cancelled


class ReleaseReason(str, Enum):
    IDLE = "idle"
    LEASE_LOST = "lease_lost"
    SHUTDOWN = "shutdown"
    ERROR = "error"      # consumer loop failed unexpectedly


class MessageOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PREEMPTED = "preempted"


# ═══════════════════════════════════════════════════════════════════════════
# DURABLE RECORDS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class OwnershipRecord:
    """Leased claim of one workstream by one worker.

    Expired once ``now > lease_expires_at``; an expired record is logically
    absent and may be overwritten by any claimant.
    """
    workstream_key: str
    worker_id: str
    claimed_at: float
    last_activity_at: float
    lease_expires_at: float

    def is_expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) > self.lease_expires_at


@dataclass(frozen=True)
class ClaimOffer:
    """Trigger telling the pool that a workstream has work and no owner."""
    workstream_key: str
    queue_handle: str

    def to_dict(self) -> dict[str, Any]:
        return {"workstream_key": self.workstream_key, "queue_handle": self.queue_handle}


@dataclass(frozen=True)
class WorkMessage:
    """One conversational edit request for a workstream.

    ``arrival_order`` is assigned by the work queue on send; ``message_id``
    deduplicates redeliveries.
    """
    message_id: str
    workstream_key: str
    thread_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    arrival_order: int = 0
    continuation_token: str | None = None


@dataclass(frozen=True)
class ThreadContext:
    """Durable work context (a branch) bound to one conversation thread."""
    thread_id: str
    workstream_key: str
    context_id: str
    last_message_id: str | None = None
    last_switched_at: float = 0.0


@dataclass(frozen=True)
class ContextHandle:
    """An activated context, as returned by a context backend."""
    workstream_key: str
    thread_id: str
    context_id: str
    path: Path | None = None


# ═══════════════════════════════════════════════════════════════════════════
# IN-MEMORY PROCESSING STATE
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ActiveProcessingState:
    """What a Work Consumer is dispatching right now."""
    current_thread_id: str
    current_message_id: str
    workstream_key: str
    executor_task: asyncio.Task[ExecutionResult]
    cancellation: CancellationSignal
    interrupt_requested: bool = False
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.started_at) * 1000, 1)
