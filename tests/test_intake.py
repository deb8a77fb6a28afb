"""Tests for message intake and workstream key parsing."""

from __future__ import annotations

import pytest

from baton.core.intake import message_from_envelope, submit
from baton.core.types import WorkstreamKey

from conftest import KEY, message


class TestWorkstreamKey:
    def test_render_and_parse(self):
        assert str(KEY) == "p1#u1"
        assert WorkstreamKey.parse("p1#u1") == KEY
        assert WorkstreamKey.parse(KEY) is KEY

    @pytest.mark.parametrize("raw", ["p1", "#u1", "p1#", ""])
    def test_invalid_keys(self, raw):
        with pytest.raises(ValueError):
            WorkstreamKey.parse(raw)

    def test_component_may_not_contain_separator(self):
        with pytest.raises(ValueError):
            WorkstreamKey("p#1", "u1")


class TestEnvelope:
    def test_full_envelope(self):
        msg = message_from_envelope({
            "messageId": "m-1",
            "groupKey": "p1#u1",
            "threadId": "t-9",
            "payload": {"instruction": "add a footer"},
            "continuationToken": "tok",
        })
        assert msg.message_id == "m-1"
        assert msg.workstream_key == "p1#u1"
        assert msg.thread_id == "t-9"
        assert msg.payload == {"instruction": "add a footer"}
        assert msg.continuation_token == "tok"

    def test_minimal_envelope(self):
        msg = message_from_envelope({"messageId": 7, "groupKey": "p1#u1", "threadId": "t"})
        assert msg.message_id == "7"
        assert msg.payload == {}
        assert msg.continuation_token is None

    def test_bad_group_key(self):
        with pytest.raises(ValueError):
            message_from_envelope({"messageId": "m", "groupKey": "nokey", "threadId": "t"})


class TestSubmit:
    @pytest.mark.asyncio
    async def test_unowned_key_gets_an_offer(self, router, store):
        assert await submit(message("m1"), router, store) is True
        offer = await router.offers.receive(0, 30)
        assert offer.body.workstream_key == "p1#u1"
        assert offer.body.queue_handle == router.handle_for(KEY)
        assert await router.for_key(KEY).pending_count() == 1

    @pytest.mark.asyncio
    async def test_owned_key_gets_no_offer(self, router, store):
        await store.try_claim(KEY, "w1", 300)
        assert await submit(message("m1"), router, store) is True
        assert len(router.offers) == 0
        assert await router.for_key(KEY).pending_count() == 1

    @pytest.mark.asyncio
    async def test_duplicate_is_dropped(self, router, store):
        await submit(message("m1"), router, store)
        assert await submit(message("m1"), router, store) is False
        assert len(router.offers) == 1
        assert await router.for_key(KEY).pending_count() == 1
