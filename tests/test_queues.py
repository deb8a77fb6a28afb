"""Tests for the in-memory offer and work queues.

Verifies:
- Work queue is FIFO per group and never hands out the second message
  while the first is in flight
- Deduplication by message_id within the dedup window
- Visibility timeout: unacked deliveries come back, stale receipts fail
- latest_arrival / pending_count bookkeeping used for interrupt detection
- Offer queue: at-least-once, one receiver per delivery
"""

from __future__ import annotations

import asyncio
import time

import pytest

from baton.core.types import ClaimOffer
from baton.queues.memory import InMemoryOfferQueue, InMemoryQueueRouter, InMemoryWorkQueue

from conftest import KEY, ManualClock, message


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def queue(clock) -> InMemoryWorkQueue:
    return InMemoryWorkQueue("work:p1#u1", dedup_window_s=300, clock=clock)


# ─────────────────────────────────────────────────────────────────────────────
# Work queue
# ─────────────────────────────────────────────────────────────────────────────

class TestWorkQueueOrdering:
    @pytest.mark.asyncio
    async def test_fifo(self, queue):
        for mid in ("m1", "m2", "m3"):
            assert await queue.send(message(mid))
        seen = []
        for _ in range(3):
            delivery = await queue.receive(0, 30)
            seen.append(delivery.body.message_id)
            assert await queue.ack(delivery.receipt)
        assert seen == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_arrival_order_is_assigned_on_send(self, queue):
        await queue.send(message("m1"))
        await queue.send(message("m2"))
        first = await queue.receive(0, 30)
        assert first.body.arrival_order == 1
        await queue.ack(first.receipt)
        second = await queue.receive(0, 30)
        assert second.body.arrival_order == 2

    @pytest.mark.asyncio
    async def test_head_blocks_group_while_in_flight(self, queue):
        await queue.send(message("m1"))
        await queue.send(message("m2"))
        await queue.receive(0, 30)
        assert await queue.receive(0, 30) is None

    @pytest.mark.asyncio
    async def test_unacked_head_is_redelivered_after_visibility(self, queue, clock):
        await queue.send(message("m1"))
        await queue.send(message("m2"))
        first = await queue.receive(0, 30)
        clock.advance(31)
        again = await queue.receive(0, 30)
        assert again.body.message_id == "m1"
        assert again.receive_count == 2
        assert again.receipt != first.receipt

    @pytest.mark.asyncio
    async def test_stale_receipt_cannot_ack(self, queue, clock):
        await queue.send(message("m1"))
        first = await queue.receive(0, 30)
        clock.advance(31)
        await queue.receive(0, 30)
        assert await queue.ack(first.receipt) is False
        assert await queue.pending_count() == 1

    @pytest.mark.asyncio
    async def test_extend_keeps_delivery_hidden(self, queue, clock):
        await queue.send(message("m1"))
        delivery = await queue.receive(0, 30)
        clock.advance(20)
        assert await queue.extend(delivery.receipt, 30)
        clock.advance(20)
        assert await queue.receive(0, 30) is None

    @pytest.mark.asyncio
    async def test_extend_zero_makes_visible_now(self, queue):
        await queue.send(message("m1"))
        delivery = await queue.receive(0, 30)
        assert await queue.extend(delivery.receipt, 0)
        again = await queue.receive(0, 30)
        assert again.body.message_id == "m1"

    @pytest.mark.asyncio
    async def test_extend_unknown_receipt(self, queue):
        assert await queue.extend("nope", 30) is False


class TestWorkQueueDedup:
    @pytest.mark.asyncio
    async def test_duplicate_send_rejected(self, queue):
        assert await queue.send(message("m1")) is True
        assert await queue.send(message("m1")) is False
        assert await queue.pending_count() == 1

    @pytest.mark.asyncio
    async def test_duplicate_rejected_even_after_ack(self, queue):
        await queue.send(message("m1"))
        delivery = await queue.receive(0, 30)
        await queue.ack(delivery.receipt)
        assert await queue.send(message("m1")) is False

    @pytest.mark.asyncio
    async def test_dedup_window_expires(self, queue, clock):
        await queue.send(message("m1"))
        clock.advance(301)
        assert await queue.send(message("m1")) is True

    @pytest.mark.asyncio
    async def test_duplicate_does_not_bump_latest_arrival(self, queue):
        await queue.send(message("m1"))
        await queue.send(message("m1"))
        assert await queue.latest_arrival() == 1


class TestWorkQueueBookkeeping:
    @pytest.mark.asyncio
    async def test_empty_queue(self, queue):
        assert await queue.latest_arrival() == 0
        assert await queue.pending_count() == 0
        assert await queue.receive(0, 30) is None

    @pytest.mark.asyncio
    async def test_latest_arrival_survives_ack(self, queue):
        await queue.send(message("m1"))
        delivery = await queue.receive(0, 30)
        await queue.ack(delivery.receipt)
        assert await queue.latest_arrival() == 1
        assert await queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_pending_counts_in_flight(self, queue):
        await queue.send(message("m1"))
        await queue.send(message("m2"))
        await queue.receive(0, 30)
        assert await queue.pending_count() == 2


class TestWorkQueueLongPoll:
    @pytest.mark.asyncio
    async def test_receive_wakes_on_send(self):
        queue = InMemoryWorkQueue("work:p1#u1")

        async def late_send():
            await asyncio.sleep(0.05)
            await queue.send(message("m1"))

        sender = asyncio.create_task(late_send())
        t0 = time.monotonic()
        delivery = await queue.receive(2.0, 30)
        await sender
        assert delivery.body.message_id == "m1"
        assert time.monotonic() - t0 < 1.0

    @pytest.mark.asyncio
    async def test_receive_times_out_empty(self):
        queue = InMemoryWorkQueue("work:p1#u1")
        t0 = time.monotonic()
        assert await queue.receive(0.05, 30) is None
        assert time.monotonic() - t0 >= 0.04


# ─────────────────────────────────────────────────────────────────────────────
# Offer queue / router
# ─────────────────────────────────────────────────────────────────────────────

class TestOfferQueue:
    @pytest.mark.asyncio
    async def test_publish_receive_ack(self):
        offers = InMemoryOfferQueue()
        await offers.publish(ClaimOffer("p1#u1", "work:p1#u1"))
        delivery = await offers.receive(0, 30)
        assert delivery.body.workstream_key == "p1#u1"
        await offers.ack(delivery.receipt)
        assert len(offers) == 0

    @pytest.mark.asyncio
    async def test_in_flight_offer_hidden_from_second_receiver(self):
        offers = InMemoryOfferQueue()
        await offers.publish(ClaimOffer("p1#u1", "work:p1#u1"))
        assert await offers.receive(0, 30) is not None
        assert await offers.receive(0, 30) is None

    @pytest.mark.asyncio
    async def test_unacked_offer_redelivered(self):
        clock = ManualClock()
        offers = InMemoryOfferQueue(clock=clock)
        await offers.publish(ClaimOffer("p1#u1", "work:p1#u1"))
        await offers.receive(0, 30)
        clock.advance(31)
        again = await offers.receive(0, 30)
        assert again.receive_count == 2

    @pytest.mark.asyncio
    async def test_offers_are_not_group_blocked(self):
        offers = InMemoryOfferQueue()
        await offers.publish(ClaimOffer("p1#u1", "work:p1#u1"))
        await offers.publish(ClaimOffer("p2#u1", "work:p2#u1"))
        first = await offers.receive(0, 30)
        second = await offers.receive(0, 30)
        assert {first.body.workstream_key, second.body.workstream_key} == {"p1#u1", "p2#u1"}


class TestRouter:
    def test_handle_and_queue_per_key(self):
        router = InMemoryQueueRouter()
        assert router.handle_for(KEY) == "work:p1#u1"
        assert router.for_key(KEY) is router.for_key("p1#u1")
        assert router.for_key(KEY) is not router.for_key("p1#u2")
