"""Durable queue contracts.

Two queues drive the protocol:

    OfferQueue   unordered, at-least-once ClaimOffers ("this key has work
                 and no owner"). Not authoritative, only a trigger.
    WorkQueue    one per workstream: FIFO, deduplicated by message_id,
                 at-least-once with a visibility timeout.

A delivery stays invisible to other receivers until it is acked or its
visibility runs out. The work queue also blocks its group head while a
delivery is in flight, so nothing behind it is handed out early.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Generic, TypeVar

from baton.core.types import ClaimOffer, WorkMessage, WorkstreamKey

T = TypeVar("T")


@dataclass(frozen=True)
class Delivery(Generic[T]):
    """One receive of a queued body. ``receipt`` identifies this delivery only."""
    body: T
    receipt: str
    receive_count: int = 1


class OfferQueue(ABC):
    @abstractmethod
    async def publish(self, offer: ClaimOffer) -> None: ...

    @abstractmethod
    async def receive(self, wait_s: float, visibility_s: float) -> Delivery[ClaimOffer] | None:
        """Long-poll for one offer; None after ``wait_s`` with nothing visible."""

    @abstractmethod
    async def ack(self, receipt: str) -> None:
        """Delete the delivered offer. Unknown or stale receipts are ignored."""


class WorkQueue(ABC):
    def __init__(self, handle: str) -> None:
        self.handle = handle

    @abstractmethod
    async def send(self, message: WorkMessage) -> bool:
        """Append ``message``; False if its message_id was seen within the dedup window."""

    @abstractmethod
    async def receive(self, wait_s: float, visibility_s: float) -> Delivery[WorkMessage] | None:
        """Long-poll for the group head. The returned message carries its arrival_order."""

    @abstractmethod
    async def ack(self, receipt: str) -> bool:
        """Remove the delivered message. False if the receipt is no longer current."""

    @abstractmethod
    async def extend(self, receipt: str, visibility_s: float) -> bool:
        """Push the in-flight delivery's visibility deadline out to now + ``visibility_s``."""

    @abstractmethod
    async def pending_count(self) -> int:
        """Messages not yet acked, in flight or not."""

    @abstractmethod
    async def latest_arrival(self) -> int:
        """Highest arrival_order ever accepted (0 when empty)."""


class QueueRouter(ABC):
    """Resolves a workstream key to its queue resources."""

    offers: OfferQueue

    def handle_for(self, key: WorkstreamKey | str) -> str:
        return f"work:{key}"

    @abstractmethod
    def work_queue(self, handle: str) -> WorkQueue: ...

    def for_key(self, key: WorkstreamKey | str) -> WorkQueue:
        return self.work_queue(self.handle_for(key))
