"""Intake: how inbound work enters the system.

    envelope → WorkMessage → workstream queue (dedup by message_id)
                           → ClaimOffer, if the key has no live owner

The owner check is a plain read and may race with a release. The
releasing consumer re-announces when work is still queued, so no message
is stranded either way.
"""

from __future__ import annotations

from typing import Any

import structlog

from baton.core.types import ClaimOffer, WorkMessage, WorkstreamKey
from baton.queues.base import QueueRouter
from baton.store.ownership import OwnershipStore

logger = structlog.get_logger()


def message_from_envelope(envelope: dict[str, Any]) -> WorkMessage:
    """Build a WorkMessage from a queue envelope (``messageId``, ``groupKey`` ...)."""
    key = WorkstreamKey.parse(envelope["groupKey"])
    return WorkMessage(
        message_id=str(envelope["messageId"]),
        workstream_key=str(key),
        thread_id=str(envelope["threadId"]),
        payload=dict(envelope.get("payload") or {}),
        continuation_token=envelope.get("continuationToken"),
    )


async def submit(message: WorkMessage, router: QueueRouter, store: OwnershipStore) -> bool:
    """Enqueue ``message``. Returns False if it was a duplicate."""
    key = WorkstreamKey.parse(message.workstream_key)
    queue = router.for_key(key)
    if not await queue.send(message):
        logger.info("message_deduplicated", workstream=str(key), message_id=message.message_id)
        return False

    owner = await store.get(key)
    if owner is None:
        await router.offers.publish(ClaimOffer(str(key), queue.handle))
        logger.info("claim_offer_published", workstream=str(key), message_id=message.message_id)
    else:
        logger.debug("message_queued_for_owner", workstream=str(key),
                     message_id=message.message_id, owner=owner.worker_id)
    return True
