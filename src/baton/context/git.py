"""Git context backend: one branch per conversation thread.

Layout:
    <workspace_root>/<project>/<user>/project   the workstream's repository
    thread-<threadId>                            branch per thread

activate  checkout the thread branch, creating it from the current HEAD
          on first use (the repository itself is initialized on demand)
flush     if the working tree is dirty: add -A + commit; push when enabled
          and the branch is not protected
"""

from __future__ import annotations

import asyncio
import re
import time
from pathlib import Path

import structlog

from baton.context.base import ContextBackend
from baton.core.errors import ContextSwitchError
from baton.core.types import ContextHandle, ThreadContext, WorkstreamKey

logger = structlog.get_logger()

GIT_TIMEOUT_S = 60.0
_UNSAFE_REF_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_IDENTITY = ("-c", "user.name=baton", "-c", "user.email=baton@localhost")


class GitCommandError(ContextSwitchError):
    def __init__(self, args: tuple[str, ...], returncode: int, stderr: str) -> None:
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(args)} exited {returncode}: {stderr.strip()[:500]}")


class GitContextBackend(ContextBackend):
    def __init__(
        self,
        workspace_root: Path | str,
        *,
        remote: str = "origin",
        push: bool = False,
        protected_branches: tuple[str, ...] = ("main", "master", "production"),
    ) -> None:
        self.workspace_root = Path(workspace_root)
        self.remote = remote
        self.push = push
        self.protected_branches = protected_branches

    def context_id_for(self, key: WorkstreamKey, thread_id: str) -> str:
        return f"thread-{_UNSAFE_REF_CHARS.sub('-', thread_id).strip('-.') or 'default'}"

    def repo_path(self, key: WorkstreamKey) -> Path:
        return self.workspace_root / key.project_id / key.user_id / "project"

    async def activate(self, key: WorkstreamKey, context: ThreadContext) -> ContextHandle:
        repo = self.repo_path(key)
        await self._ensure_repo(repo)

        branch = context.context_id
        exists = await self._branch_exists(repo, branch)
        if exists:
            await self._git(repo, "checkout", branch)
        else:
            await self._git(repo, "checkout", "-b", branch)

        logger.info("git_branch_activated", workstream=str(key), thread_id=context.thread_id,
                    branch=branch, resumed=exists)
        return ContextHandle(
            workstream_key=str(key),
            thread_id=context.thread_id,
            context_id=branch,
            path=repo,
        )

    async def flush(self, handle: ContextHandle, *, reason: str) -> bool:
        if handle.path is None or not (handle.path / ".git").exists():
            return False
        repo = handle.path

        status = await self._git(repo, "status", "--porcelain")
        if not status.strip():
            return False

        await self._git(repo, "add", "-A")
        message = f"Auto-save thread {handle.thread_id}: {reason}"
        await self._git(repo, *_IDENTITY, "commit", "-m", message)
        logger.info("git_context_committed", thread_id=handle.thread_id,
                    branch=handle.context_id, reason=reason)

        if self.push and handle.context_id not in self.protected_branches:
            await self._git(repo, "push", "-u", self.remote, handle.context_id)
            logger.info("git_context_pushed", branch=handle.context_id, remote=self.remote)
        return True

    async def current_branch(self, repo: Path) -> str:
        return (await self._git(repo, "rev-parse", "--abbrev-ref", "HEAD")).strip()

    async def _ensure_repo(self, repo: Path) -> None:
        if (repo / ".git").exists():
            return
        try:
            repo.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ContextSwitchError(f"Cannot create workspace {repo}: {e}") from e
        await self._git(repo, "init")
        readme = repo / "README.md"
        if not readme.exists():
            readme.write_text(f"# {repo.parent.parent.name}\n\nInitialized {time.strftime('%Y-%m-%d')}\n")
        await self._git(repo, "add", "-A")
        await self._git(repo, *_IDENTITY, "commit", "-m", "Initial commit")
        logger.info("git_repo_initialized", path=str(repo))

    async def _branch_exists(self, repo: Path, branch: str) -> bool:
        try:
            await self._git(repo, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        except GitCommandError:
            return False
        return True

    async def _git(self, repo: Path, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(repo),
            )
        except OSError as e:
            raise ContextSwitchError(f"Cannot run git: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=GIT_TIMEOUT_S)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ContextSwitchError(f"git {args[0]} timed out after {GIT_TIMEOUT_S}s") from e
        if proc.returncode != 0:
            raise GitCommandError(args, proc.returncode or 1, stderr.decode("utf-8", errors="replace"))
        return stdout.decode("utf-8", errors="replace")
