"""Tests for the SQL ownership store, thread store and queues (aiosqlite).

Same contracts as the in-memory backends, against real conditional
SQL statements.
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from baton.core.errors import LeaseLostError
from baton.core.types import ClaimOffer, ClaimResult, WorkstreamKey
from baton.db.session import create_session_factory
from baton.queues.sql import SqlQueueRouter, SqlWorkQueue
from baton.store.ownership import SqlOwnershipStore
from baton.store.threads import SqlThreadContextStore

from conftest import KEY, ManualClock, message


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def sql_store(sql_engine, clock) -> SqlOwnershipStore:
    return SqlOwnershipStore(sql_engine, clock=clock)


class _ReplyLostSession:
    """Commits for real, then reports the connection as reset."""

    def __init__(self, session) -> None:
        self._session = session

    async def __aenter__(self):
        await self._session.__aenter__()
        return self

    async def __aexit__(self, *exc_info):
        return await self._session.__aexit__(*exc_info)

    async def execute(self, statement):
        return await self._session.execute(statement)

    async def commit(self) -> None:
        await self._session.commit()
        raise OperationalError("COMMIT", {}, ConnectionResetError("connection reset by peer"))


class FirstCommitReplyLost:
    """Session factory whose first session loses the reply to its COMMIT."""

    def __init__(self, engine) -> None:
        self._factory = create_session_factory(engine)
        self.sessions_opened = 0

    def __call__(self):
        self.sessions_opened += 1
        session = self._factory()
        return _ReplyLostSession(session) if self.sessions_opened == 1 else session


# ─────────────────────────────────────────────────────────────────────────────
# Ownership
# ─────────────────────────────────────────────────────────────────────────────

class TestSqlOwnership:
    @pytest.mark.asyncio
    async def test_claim_then_rejected(self, sql_store):
        result, record = await sql_store.try_claim(KEY, "w1", 300)
        assert result is ClaimResult.CLAIMED
        assert record.worker_id == "w1"
        result, record = await sql_store.try_claim(KEY, "w2", 300)
        assert result is ClaimResult.ALREADY_OWNED
        assert record is None

    @pytest.mark.asyncio
    async def test_expired_record_is_taken_over(self, sql_store, clock):
        await sql_store.try_claim(KEY, "w1", 300)
        clock.advance(301)
        assert await sql_store.get(KEY) is None
        result, record = await sql_store.try_claim(KEY, "w2", 300)
        assert result is ClaimResult.CLAIMED
        assert (await sql_store.get(KEY)).worker_id == "w2"

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self, sql_store):
        outcomes = await asyncio.gather(
            *(sql_store.try_claim(KEY, f"w{i}", 300) for i in range(8))
        )
        assert [r for r, _ in outcomes].count(ClaimResult.CLAIMED) == 1

    @pytest.mark.asyncio
    async def test_owner_reclaim_refreshes_lease(self, sql_store, clock):
        await sql_store.try_claim(KEY, "w1", 300)
        clock.advance(100)
        result, record = await sql_store.try_claim(KEY, "w1", 300)
        assert result is ClaimResult.CLAIMED
        assert record.lease_expires_at == clock.now + 300
        result, _ = await sql_store.try_claim(KEY, "w2", 300)
        assert result is ClaimResult.ALREADY_OWNED

    @pytest.mark.asyncio
    async def test_claim_retried_after_lost_commit_reply(self, sql_engine, clock, fresh_health):
        sessions = FirstCommitReplyLost(sql_engine)
        store = SqlOwnershipStore(sql_engine, session_factory=sessions, clock=clock)

        result, record = await store.try_claim(KEY, "w1", 300)

        # The first attempt's row landed; the retry must still report the claim.
        assert sessions.sessions_opened == 2
        assert result is ClaimResult.CLAIMED
        assert record.worker_id == "w1"
        assert (await store.get(KEY)).worker_id == "w1"
        assert fresh_health.get("store").failure_count == 0

    @pytest.mark.asyncio
    async def test_renew_conditional_on_owner(self, sql_store, clock):
        await sql_store.try_claim(KEY, "w1", 300)
        clock.advance(100)
        renewed = await sql_store.renew(KEY, "w1", 300)
        assert renewed.lease_expires_at == clock.now + 300
        with pytest.raises(LeaseLostError):
            await sql_store.renew(KEY, "w2", 300)

    @pytest.mark.asyncio
    async def test_renew_after_expiry_fails(self, sql_store, clock):
        await sql_store.try_claim(KEY, "w1", 300)
        clock.advance(301)
        with pytest.raises(LeaseLostError):
            await sql_store.renew(KEY, "w1", 300)

    @pytest.mark.asyncio
    async def test_release_conditional_on_owner(self, sql_store):
        await sql_store.try_claim(KEY, "w1", 300)
        assert await sql_store.release(KEY, "w2") is False
        assert await sql_store.release(KEY, "w1") is True
        assert await sql_store.get(KEY) is None


# ─────────────────────────────────────────────────────────────────────────────
# Thread contexts
# ─────────────────────────────────────────────────────────────────────────────

class TestSqlThreadContexts:
    @pytest.mark.asyncio
    async def test_get_or_create_is_idempotent(self, sql_engine):
        threads = SqlThreadContextStore(sql_engine)
        first = await threads.get_or_create(KEY, "a", "thread-a")
        second = await threads.get_or_create(KEY, "a", "ignored")
        assert first.context_id == second.context_id == "thread-a"

    @pytest.mark.asyncio
    async def test_switch_and_message_bookkeeping(self, sql_engine):
        threads = SqlThreadContextStore(sql_engine)
        await threads.get_or_create(KEY, "a", "thread-a")
        await threads.get_or_create(KEY, "b", "thread-b")
        await threads.mark_switched(KEY, "a", at=10.0)
        await threads.mark_switched(KEY, "b", at=20.0)
        await threads.record_message(KEY, "a", "m1")

        assert [c.thread_id for c in await threads.list_for(KEY)] == ["b", "a"]
        a = await threads.get(KEY, "a")
        assert a.last_message_id == "m1"
        assert a.last_switched_at == 10.0
        assert await threads.get(KEY, "zzz") is None


# ─────────────────────────────────────────────────────────────────────────────
# Queues
# ─────────────────────────────────────────────────────────────────────────────

class TestSqlWorkQueue:
    @pytest.mark.asyncio
    async def test_fifo_with_head_blocking(self, sql_engine):
        router = SqlQueueRouter(sql_engine, poll_interval_s=0.01)
        queue = router.for_key(KEY)
        for mid in ("m1", "m2", "m3"):
            assert await queue.send(message(mid))

        first = await queue.receive(0, 30)
        assert first.body.message_id == "m1"
        assert await queue.receive(0, 30) is None
        assert await queue.ack(first.receipt)

        second = await queue.receive(0, 30)
        assert second.body.message_id == "m2"
        assert second.body.arrival_order > first.body.arrival_order
        assert second.body.payload == {"instruction": "do m2"}

    @pytest.mark.asyncio
    async def test_dedup(self, sql_engine):
        queue = SqlQueueRouter(sql_engine).for_key(KEY)
        assert await queue.send(message("m1")) is True
        assert await queue.send(message("m1")) is False
        delivery = await queue.receive(0, 30)
        await queue.ack(delivery.receipt)
        assert await queue.send(message("m1")) is False

    @pytest.mark.asyncio
    async def test_dedup_window_expiry_purges_acked(self, sql_engine, clock):
        queue = SqlWorkQueue("work:p1#u1", sql_engine, create_session_factory(sql_engine),
                             dedup_window_s=60, clock=clock)
        await queue.send(message("m1"))
        delivery = await queue.receive(0, 30)
        await queue.ack(delivery.receipt)
        clock.advance(61)
        assert await queue.send(message("m1")) is True

    @pytest.mark.asyncio
    async def test_visibility_and_extend(self, sql_engine, clock):
        queue = SqlWorkQueue("work:p1#u1", sql_engine, create_session_factory(sql_engine),
                             clock=clock)
        await queue.send(message("m1"))
        first = await queue.receive(0, 30)
        clock.advance(20)
        assert await queue.extend(first.receipt, 30)
        clock.advance(20)
        assert await queue.receive(0, 30) is None
        clock.advance(11)
        again = await queue.receive(0, 30)
        assert again.body.message_id == "m1"
        assert again.receive_count == 2
        assert await queue.ack(first.receipt) is False
        assert await queue.ack(again.receipt) is True

    @pytest.mark.asyncio
    async def test_bookkeeping(self, sql_engine):
        queue = SqlQueueRouter(sql_engine).for_key(KEY)
        assert await queue.latest_arrival() == 0
        await queue.send(message("m1"))
        await queue.send(message("m2"))
        latest = await queue.latest_arrival()
        assert latest > 0
        delivery = await queue.receive(0, 30)
        await queue.ack(delivery.receipt)
        assert await queue.pending_count() == 1
        assert await queue.latest_arrival() == latest

    @pytest.mark.asyncio
    async def test_groups_are_isolated(self, sql_engine):
        router = SqlQueueRouter(sql_engine)
        q1, q2 = router.for_key("p1#u1"), router.for_key("p2#u1")
        await q1.send(message("m1"))
        await q2.send(message("m1", key=WorkstreamKey("p2", "u1")))
        assert (await q1.receive(0, 30)) is not None
        assert (await q2.receive(0, 30)) is not None


class TestSqlOfferQueue:
    @pytest.mark.asyncio
    async def test_publish_receive_ack(self, sql_engine):
        offers = SqlQueueRouter(sql_engine).offers
        await offers.publish(ClaimOffer("p1#u1", "work:p1#u1"))
        delivery = await offers.receive(0, 30)
        assert delivery.body == ClaimOffer("p1#u1", "work:p1#u1")
        assert await offers.receive(0, 30) is None
        await offers.ack(delivery.receipt)

    @pytest.mark.asyncio
    async def test_long_poll_sees_late_publish(self, sql_engine):
        offers = SqlQueueRouter(sql_engine, poll_interval_s=0.02).offers

        async def late():
            await asyncio.sleep(0.1)
            await offers.publish(ClaimOffer("p1#u1", "work:p1#u1"))

        publisher = asyncio.create_task(late())
        delivery = await offers.receive(2.0, 30)
        await publisher
        assert delivery is not None
