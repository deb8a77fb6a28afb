"""Context activation backends: where a thread's work lives between messages."""

from baton.context.base import ContextBackend
from baton.context.git import GitContextBackend

__all__ = ["ContextBackend", "GitContextBackend"]
