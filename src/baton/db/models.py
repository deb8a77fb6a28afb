"""Database models for ownership, thread contexts, and the durable queues.

Design principles:
- Timestamps are epoch seconds (float) so lease comparisons are plain
  numeric comparisons on every backend
- One row per workstream in ``workstream_ownership``; every transition on
  it is a single conditional statement (see baton.store.ownership)
- Queue rows are kept after acknowledgment until the dedup window passes,
  so redelivered message ids are rejected on send
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class with common utilities."""

    def to_dict(self) -> dict[str, Any]:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


class OwnershipRow(Base):
    """Leased claim of a workstream. At most one non-expired row per key."""

    __tablename__ = "workstream_ownership"

    workstream_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    worker_id: Mapped[str] = mapped_column(String(128), nullable=False)
    claimed_at: Mapped[float] = mapped_column(Float, nullable=False)
    last_activity_at: Mapped[float] = mapped_column(Float, nullable=False)
    lease_expires_at: Mapped[float] = mapped_column(Float, nullable=False)


class ThreadContextRow(Base):
    """Durable context (branch) bound to a conversation thread. Never deleted."""

    __tablename__ = "thread_contexts"
    __table_args__ = (
        UniqueConstraint("workstream_key", "thread_id", name="uq_thread_contexts_key_thread"),
        Index("ix_thread_contexts_recent", "workstream_key", "last_switched_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workstream_key: Mapped[str] = mapped_column(String(255), nullable=False)
    thread_id: Mapped[str] = mapped_column(String(255), nullable=False)
    context_id: Mapped[str] = mapped_column(String(255), nullable=False)
    last_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_switched_at: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)


class WorkMessageRow(Base):
    """Per-workstream FIFO queue entry. ``id`` is the arrival order."""

    __tablename__ = "work_messages"
    __table_args__ = (
        UniqueConstraint("queue_handle", "message_id", name="uq_work_messages_dedup"),
        Index("ix_work_messages_head", "queue_handle", "acked_at", "id"),
        # Ids are arrival order and must never be reused after a purge.
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    queue_handle: Mapped[str] = mapped_column(String(255), nullable=False)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    workstream_key: Mapped[str] = mapped_column(String(255), nullable=False)
    thread_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    continuation_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    enqueued_at: Mapped[float] = mapped_column(Float, nullable=False)
    visible_at: Mapped[float] = mapped_column(Float, nullable=False)
    receipt: Mapped[str | None] = mapped_column(String(64), nullable=True)
    receive_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    acked_at: Mapped[float | None] = mapped_column(Float, nullable=True)


class ClaimOfferRow(Base):
    """Unordered, at-least-once claim offer."""

    __tablename__ = "claim_offers"
    __table_args__ = (Index("ix_claim_offers_visible", "visible_at", "id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workstream_key: Mapped[str] = mapped_column(String(255), nullable=False)
    queue_handle: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    visible_at: Mapped[float] = mapped_column(Float, nullable=False)
    receipt: Mapped[str | None] = mapped_column(String(64), nullable=True)
    receive_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
