"""Result delivery: where a handled message's outcome goes.

Every dequeued message ends in exactly one ``deliver`` call with outcome
completed, failed or preempted. A message that carries a continuation
token (a caller waiting on an async callback) gets it resolved here,
including preempted ones, so no caller is left hanging.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from baton.core.errors import ResultDeliveryError
from baton.core.executor import ExecutionResult
from baton.core.types import MessageOutcome, WorkMessage

logger = structlog.get_logger()

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def result_payload(
    message: WorkMessage,
    outcome: MessageOutcome,
    result: ExecutionResult | None,
) -> dict[str, Any]:
    return {
        "messageId": message.message_id,
        "workstreamKey": message.workstream_key,
        "threadId": message.thread_id,
        "continuationToken": message.continuation_token,
        "outcome": outcome.value,
        "success": bool(result and result.success and outcome is MessageOutcome.COMPLETED),
        "summary": result.summary if result else "",
        "committed": bool(result and result.committed),
    }


class ResultSink(ABC):
    @abstractmethod
    async def deliver(
        self,
        message: WorkMessage,
        outcome: MessageOutcome,
        result: ExecutionResult | None,
    ) -> None:
        """Hand the outcome to the external result path. Raises ResultDeliveryError."""

    async def close(self) -> None:
        pass


class LoggingResultSink(ResultSink):
    """Writes outcomes to the log only. Used when no callback URL is configured."""

    async def deliver(self, message, outcome, result):
        logger.info("result_delivered", sink="log", **result_payload(message, outcome, result))


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ResultDeliveryError) and exc.status_code in _RETRYABLE_STATUS_CODES:
        return True
    return isinstance(exc, httpx.TransportError)


class HttpResultSink(ResultSink):
    """POSTs each outcome as JSON to ``callback_url``."""

    def __init__(
        self,
        callback_url: str,
        timeout_s: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = callback_url
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=timeout_s, write=5.0, pool=5.0),
            headers={"Content-Type": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def deliver(self, message, outcome, result):
        body = result_payload(message, outcome, result)

        @retry(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        )
        async def _post() -> None:
            response = await self._client.post(self._url, json=body)
            if response.status_code >= 400:
                raise ResultDeliveryError(
                    f"Callback returned {response.status_code}",
                    status_code=response.status_code,
                )

        try:
            await _post()
        except httpx.TransportError as e:
            raise ResultDeliveryError(f"Callback transport error: {e}") from e

        logger.info(
            "result_delivered",
            sink="http",
            message_id=message.message_id,
            outcome=outcome.value,
            has_continuation=message.continuation_token is not None,
        )
