"""Small asyncio helpers shared by the broker and consumer loops."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


async def until_set(aw: Awaitable[T], *events: asyncio.Event) -> T | None:
    """Await ``aw`` unless one of ``events`` gets set first.

    Returns the awaitable's result, or None after cancelling it. A result
    that became ready in the same loop iteration as an event still wins.
    """
    task = asyncio.ensure_future(aw)
    waiters = [asyncio.ensure_future(e.wait()) for e in events]
    try:
        await asyncio.wait({task, *waiters}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        for w in waiters:
            w.cancel()
    if task.done():
        return task.result()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    return None
