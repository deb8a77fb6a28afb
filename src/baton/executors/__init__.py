"""Task executor implementations."""

from baton.executors.subprocess import SubprocessExecutor

__all__ = ["SubprocessExecutor"]
