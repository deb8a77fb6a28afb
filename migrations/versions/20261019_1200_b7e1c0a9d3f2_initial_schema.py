"""Initial schema: workstream ownership, thread contexts, work and offer queues.

Revision ID: b7e1c0a9d3f2
Revises:
Create Date: 2026-10-19 12:00:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "b7e1c0a9d3f2"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================================
    # WORKSTREAM OWNERSHIP
    # =========================================================================
    op.create_table(
        "workstream_ownership",
        sa.Column("workstream_key", sa.String(255), primary_key=True),
        sa.Column("worker_id", sa.String(128), nullable=False),
        sa.Column("claimed_at", sa.Float, nullable=False),
        sa.Column("last_activity_at", sa.Float, nullable=False),
        sa.Column("lease_expires_at", sa.Float, nullable=False),
    )

    # =========================================================================
    # THREAD CONTEXTS
    # =========================================================================
    op.create_table(
        "thread_contexts",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("workstream_key", sa.String(255), nullable=False),
        sa.Column("thread_id", sa.String(255), nullable=False),
        sa.Column("context_id", sa.String(255), nullable=False),
        sa.Column("last_message_id", sa.String(255), nullable=True),
        sa.Column("last_switched_at", sa.Float, nullable=False, server_default="0"),
        sa.UniqueConstraint("workstream_key", "thread_id", name="uq_thread_contexts_key_thread"),
    )
    op.create_index("ix_thread_contexts_recent", "thread_contexts",
                    ["workstream_key", "last_switched_at"])

    # =========================================================================
    # WORK QUEUE (per-workstream FIFO)
    # =========================================================================
    op.create_table(
        "work_messages",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("queue_handle", sa.String(255), nullable=False),
        sa.Column("message_id", sa.String(255), nullable=False),
        sa.Column("workstream_key", sa.String(255), nullable=False),
        sa.Column("thread_id", sa.String(255), nullable=False),
        sa.Column("payload", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
                  nullable=False),
        sa.Column("continuation_token", sa.Text, nullable=True),
        sa.Column("enqueued_at", sa.Float, nullable=False),
        sa.Column("visible_at", sa.Float, nullable=False),
        sa.Column("receipt", sa.String(64), nullable=True),
        sa.Column("receive_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("acked_at", sa.Float, nullable=True),
        sa.UniqueConstraint("queue_handle", "message_id", name="uq_work_messages_dedup"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_work_messages_head", "work_messages",
                    ["queue_handle", "acked_at", "id"])

    # =========================================================================
    # CLAIM OFFERS
    # =========================================================================
    op.create_table(
        "claim_offers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("workstream_key", sa.String(255), nullable=False),
        sa.Column("queue_handle", sa.String(255), nullable=False),
        sa.Column("created_at", sa.Float, nullable=False),
        sa.Column("visible_at", sa.Float, nullable=False),
        sa.Column("receipt", sa.String(64), nullable=True),
        sa.Column("receive_count", sa.Integer, nullable=False, server_default="0"),
    )
    op.create_index("ix_claim_offers_visible", "claim_offers", ["visible_at", "id"])


def downgrade() -> None:
    op.drop_index("ix_claim_offers_visible", table_name="claim_offers")
    op.drop_table("claim_offers")
    op.drop_index("ix_work_messages_head", table_name="work_messages")
    op.drop_table("work_messages")
    op.drop_index("ix_thread_contexts_recent", table_name="thread_contexts")
    op.drop_table("thread_contexts")
    op.drop_table("workstream_ownership")
