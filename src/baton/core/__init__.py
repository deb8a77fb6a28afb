"""Baton core: claim broker, work consumer, interrupts, sessions, idle release.

Submodules are imported directly (``from baton.core.worker import Worker``);
the stores and queues import ``baton.core.types`` and ``baton.core.errors``,
so this package does not re-export anything that depends on them.
"""
