"""Task executor that runs an external command per message.

The command runs in the activated context's directory with the message
instruction on stdin. Thread and message identifiers are passed through
the environment (``BATON_*``).

Stopping:
    cancellation signal → SIGINT, then wait for the process to exit on its
                          own; that is the stop acknowledgment
    task cancelled      → SIGKILL (the forced path)

If the last non-empty stdout line is a JSON object, its ``summary`` and
``committed`` fields become the result.
"""

from __future__ import annotations

import asyncio
import json
import os
import shlex
import signal
import time
from typing import Any, Sequence

import structlog

from baton.core.errors import ExecutorError
from baton.core.executor import ExecutionRequest, ExecutionResult

logger = structlog.get_logger()

MAX_OUTPUT_CHARS = 50_000
# Bound on reaping a killed process before the cancellation propagates.
KILL_REAP_TIMEOUT_S = 5.0


def parse_trailer(stdout: str) -> dict[str, Any]:
    """JSON object on the last non-empty line of ``stdout``, or {}."""
    for line in reversed(stdout.splitlines()):
        line = line.strip()
        if not line:
            continue
        if line.startswith("{"):
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                return {}
            return data if isinstance(data, dict) else {}
        return {}
    return {}


class SubprocessExecutor:
    def __init__(
        self,
        command: str | Sequence[str],
        *,
        max_output_chars: int = MAX_OUTPUT_CHARS,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.argv:
            raise ValueError("executor command is empty")
        self.max_output_chars = max_output_chars
        self.extra_env = extra_env or {}

    def _env(self, request: ExecutionRequest) -> dict[str, str]:
        env = {**os.environ, **self.extra_env}
        env["BATON_WORKSTREAM"] = request.workstream_key
        env["BATON_THREAD_ID"] = request.thread_id
        env["BATON_MESSAGE_ID"] = request.message_id
        if request.continuation_token:
            env["BATON_CONTINUATION_TOKEN"] = request.continuation_token
        return env

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        t0 = time.monotonic()
        instruction = request.payload.get("instruction")
        stdin = (instruction if isinstance(instruction, str) else json.dumps(request.payload)).encode()
        cwd = str(request.context.path) if request.context.path else None

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self._env(request),
            )
        except OSError as e:
            raise ExecutorError(f"Cannot start executor {self.argv[0]!r}: {e}") from e

        logger.info("executor_process_started", pid=proc.pid, message_id=request.message_id,
                    thread_id=request.thread_id)

        communicate = asyncio.ensure_future(proc.communicate(stdin))
        stop = asyncio.ensure_future(request.cancellation.wait())
        cancelled = False
        try:
            await asyncio.wait({communicate, stop}, return_when=asyncio.FIRST_COMPLETED)
            if not communicate.done():
                cancelled = True
                logger.info("executor_sigint", pid=proc.pid, message_id=request.message_id,
                            reason=request.cancellation.reason)
                if proc.returncode is None:
                    proc.send_signal(signal.SIGINT)
            stdout_b, stderr_b = await communicate
        except asyncio.CancelledError:
            communicate.cancel()
            if proc.returncode is None:
                proc.kill()
                logger.warning("executor_killed", pid=proc.pid, message_id=request.message_id)
            try:
                await asyncio.wait_for(proc.wait(), timeout=KILL_REAP_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.error("executor_not_reaped", pid=proc.pid, message_id=request.message_id)
            raise
        finally:
            stop.cancel()

        stdout = stdout_b.decode("utf-8", errors="replace")[-self.max_output_chars:]
        stderr = stderr_b.decode("utf-8", errors="replace")[-self.max_output_chars:]
        trailer = parse_trailer(stdout)
        elapsed_ms = round((time.monotonic() - t0) * 1000)

        logger.info(
            "executor_process_exited",
            message_id=request.message_id,
            exit_code=proc.returncode,
            cancelled=cancelled,
            elapsed_ms=elapsed_ms,
            output_len=len(stdout),
        )
        return ExecutionResult(
            success=proc.returncode == 0 and not cancelled,
            summary=str(trailer.get("summary") or stdout.strip()[-500:]),
            committed=bool(trailer.get("committed", False)),
            cancelled=cancelled,
            details={
                "exit_code": proc.returncode,
                "elapsed_ms": elapsed_ms,
                "stderr": stderr[-2000:],
            },
        )
