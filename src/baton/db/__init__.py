"""Database module for baton.

Exports:
- Base: SQLAlchemy declarative base
- session helpers: engine/session factories, init/close
"""

from baton.db.models import Base
from baton.db.session import (
    close_db,
    create_engine,
    create_session_factory,
    db_session,
    get_session_factory,
    init_db,
)

__all__ = [
    "Base",
    "close_db",
    "create_engine",
    "create_session_factory",
    "db_session",
    "get_session_factory",
    "init_db",
]
