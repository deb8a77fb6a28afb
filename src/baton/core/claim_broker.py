"""Claim Broker: turns claim offers into owned workstreams.

Loop (one per worker):
    1. wait for a free claim slot (max_concurrent_claims)
    2. long-poll the offer queue
    3. try_claim(key): one conditional write in the Ownership Store
         CLAIMED        → ack the offer, hand the key to a new Work Consumer
         ALREADY_OWNED  → ack the offer (discard); someone else has it
         running here   → ack the offer (discard) without touching the store
         store error    → leave the offer un-acked; the queue redelivers it
                          after its visibility timeout

Nothing here is fatal. Losing a claim race is the normal case when several
workers see the same offer.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable

import structlog

from baton.config import LeaseTimings
from baton.core.aio import until_set
from baton.core.errors import QueueUnavailableError, StoreUnavailableError
from baton.core.types import ClaimOffer, ClaimResult, OwnershipRecord, WorkstreamKey
from baton.observability.events import EventSink
from baton.queues.base import Delivery, OfferQueue
from baton.store.ownership import OwnershipStore

logger = structlog.get_logger()

# How long a received offer stays hidden from other brokers.
OFFER_VISIBILITY_S = 30.0
MAX_BACKOFF_S = 30.0

ClaimHandler = Callable[[WorkstreamKey, OwnershipRecord], None]


class ClaimBroker:
    def __init__(
        self,
        worker_id: str,
        *,
        store: OwnershipStore,
        offers: OfferQueue,
        events: EventSink,
        timings: LeaseTimings,
        capacity: asyncio.Semaphore,
        on_claimed: ClaimHandler,
        is_running: Callable[[WorkstreamKey], bool] | None = None,
    ) -> None:
        self.worker_id = worker_id
        self._store = store
        self._offers = offers
        self._events = events
        self._timings = timings
        self._capacity = capacity
        self._on_claimed = on_claimed
        self._is_running = is_running or (lambda key: False)
        self._stopping = asyncio.Event()
        self._backoff_s = 0.0

    async def poll_for_offer(self) -> Delivery[ClaimOffer] | None:
        """Long-poll for one offer; None after ``offer_wait_s`` or on stop."""
        return await until_set(
            self._offers.receive(self._timings.offer_wait_s, OFFER_VISIBILITY_S),
            self._stopping,
        )

    async def try_claim(self, key: WorkstreamKey) -> tuple[ClaimResult, OwnershipRecord | None]:
        t0 = time.monotonic()
        result, record = await self._store.try_claim(key, self.worker_id, self._timings.lease_s)
        if result is ClaimResult.CLAIMED:
            await self._events.claimed(str(key), self.worker_id, (time.monotonic() - t0) * 1000)
        else:
            await self._events.claim_rejected(str(key), self.worker_id, "already_owned")
        return result, record

    def stop(self) -> None:
        self._stopping.set()

    async def run(self) -> None:
        logger.info("claim_broker_started", worker_id=self.worker_id)
        while not self._stopping.is_set():
            acquired = await until_set(self._capacity.acquire(), self._stopping)
            if not acquired:
                break
            handed_off = False
            try:
                handed_off = await self._poll_once()
            finally:
                if not handed_off:
                    self._capacity.release()
        logger.info("claim_broker_stopped", worker_id=self.worker_id)

    async def _poll_once(self) -> bool:
        """One poll/claim round. True if a consumer now holds the capacity slot."""
        try:
            delivery = await self.poll_for_offer()
        except QueueUnavailableError as e:
            logger.warning("offer_poll_failed", worker_id=self.worker_id, error=str(e))
            await self._backoff()
            return False
        if delivery is None:
            return False

        offer = delivery.body
        try:
            key = WorkstreamKey.parse(offer.workstream_key)
        except ValueError as e:
            logger.error("malformed_claim_offer", offer=offer.to_dict(), error=str(e))
            await self._ack(delivery)
            return False

        if self._is_running(key):
            # Duplicate offer for a key this worker is already consuming.
            logger.info("offer_for_running_workstream", workstream=str(key),
                        worker_id=self.worker_id)
            await self._ack(delivery)
            return False

        try:
            result, record = await self.try_claim(key)
        except StoreUnavailableError as e:
            await self._events.claim_rejected(str(key), self.worker_id, "error")
            logger.warning("claim_deferred", workstream=str(key), error=str(e),
                           redelivery_after_s=OFFER_VISIBILITY_S)
            await self._backoff()
            return False

        self._backoff_s = 0.0
        await self._ack(delivery)
        if result is not ClaimResult.CLAIMED or record is None:
            return False
        self._on_claimed(key, record)
        return True

    async def _ack(self, delivery: Delivery[ClaimOffer]) -> None:
        try:
            await self._offers.ack(delivery.receipt)
        except QueueUnavailableError as e:
            # Redelivered later and discarded as ALREADY_OWNED.
            logger.warning("offer_ack_failed", workstream=delivery.body.workstream_key,
                           error=str(e))

    async def _backoff(self) -> None:
        self._backoff_s = min(max(self._backoff_s * 2, 0.5), MAX_BACKOFF_S)
        await until_set(asyncio.sleep(self._backoff_s), self._stopping)
