"""Error taxonomy for the coordination core.

Claim races are not errors (a losing claimant gets ``ClaimResult.ALREADY_OWNED``).
Everything below is raised by a client or collaborator and handled by the
Claim Broker / Work Consumer loops; none of it is allowed to end the worker.
"""

from __future__ import annotations


class BatonError(Exception):
    """Root exception for all baton domain errors."""


class LeaseLostError(BatonError):
    """A conditional renew/verify found the record gone or held by someone else."""

    def __init__(self, workstream_key: str, worker_id: str) -> None:
        self.workstream_key = workstream_key
        self.worker_id = worker_id
        super().__init__(f"Worker {worker_id} no longer owns {workstream_key}")


class StoreUnavailableError(BatonError):
    """The ownership/thread store kept failing after client-level retries."""


class QueueUnavailableError(BatonError):
    """A queue kept failing after client-level retries."""


class ContextSwitchError(BatonError):
    """A context backend could not flush or activate a thread context."""

    def __init__(self, message: str, *, thread_id: str | None = None) -> None:
        self.thread_id = thread_id
        super().__init__(message)


class ExecutorError(BatonError):
    """The task executor raised instead of returning a result."""


class ResultDeliveryError(BatonError):
    """The result sink could not deliver a message outcome."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
