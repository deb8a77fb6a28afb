from baton.store.ownership import InMemoryOwnershipStore, OwnershipStore, SqlOwnershipStore
from baton.store.threads import (
    InMemoryThreadContextStore,
    SqlThreadContextStore,
    ThreadContextStore,
)

__all__ = [
    "InMemoryOwnershipStore",
    "InMemoryThreadContextStore",
    "OwnershipStore",
    "SqlOwnershipStore",
    "SqlThreadContextStore",
    "ThreadContextStore",
]
