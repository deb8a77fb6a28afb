"""Client-level retries for store and queue calls.

Transient database failures (dropped connections, lock timeouts, pool
exhaustion) are retried with exponential backoff. When retries run out the
call raises the caller's ``*UnavailableError`` and the dependency is marked
in the health registry. Anything else propagates untouched on the first
attempt; a conditional write that did not match is not an error at all.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from baton.core.errors import BatonError
from baton.observability.health import get_health

logger = structlog.get_logger()

T = TypeVar("T")

_MAX_ATTEMPTS = 4


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (ConnectionError, asyncio.TimeoutError))


def with_retries(
    dependency: str,
    unavailable: type[BatonError],
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async client method with transient-failure retries."""

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            health = get_health().get(dependency)
            try:
                async for attempt in AsyncRetrying(
                    retry=retry_if_exception(is_transient),
                    stop=stop_after_attempt(_MAX_ATTEMPTS),
                    wait=wait_exponential(multiplier=0.2, min=0.1, max=3),
                    reraise=True,
                ):
                    with attempt:
                        result = await fn(*args, **kwargs)
            except Exception as exc:
                if not is_transient(exc):
                    raise
                health.record_failure(exc)
                logger.warning(
                    "backend_call_failed",
                    dependency=dependency,
                    operation=fn.__name__,
                    attempts=_MAX_ATTEMPTS,
                    error=str(exc),
                )
                raise unavailable(f"{dependency}.{fn.__name__} failed: {exc}") from exc
            health.record_success()
            return result

        return wrapper

    return decorator
