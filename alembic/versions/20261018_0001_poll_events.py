"""Raw poll event log, single-row poll cursor and per-type event counters.

Revision ID: 002_poll_events
Revises: 001_pool_schema
Create Date: 2026-10-18 00:01:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "002_poll_events"
down_revision: Union[str, None] = "001_pool_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "poll_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.BigInteger(), nullable=False),
        sa.Column("unique_id", sa.String(255), nullable=False),
        sa.Column("correlation_id", sa.String(255), nullable=True),
        sa.Column("relay_id", sa.String(255), nullable=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("token_id", sa.String(100), nullable=True),
        sa.Column("network_id", sa.String(50), nullable=True),
        sa.Column("chain_id", sa.String(50), nullable=True),
        sa.Column("tx_hash", sa.String(100), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("log_index", sa.Integer(), nullable=True),
        sa.Column("finalized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("event_data", postgresql.JSONB(), nullable=False),
        sa.Column("processing_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("unique_id", name="uq_poll_events_unique_id"),
    )
    op.create_index("idx_poll_events_event_id", "poll_events", ["event_id"])
    op.create_index("idx_poll_events_event_type", "poll_events", ["event_type"])
    op.create_index("idx_poll_events_name", "poll_events", ["name"])
    op.create_index("idx_poll_events_token_id", "poll_events", ["token_id"])
    op.create_index("idx_poll_events_tx_hash", "poll_events", ["tx_hash"])
    op.create_index("idx_poll_events_processing_status", "poll_events", ["processing_status"])
    op.create_index(
        "idx_poll_events_type_status", "poll_events", ["event_type", "processing_status"]
    )

    op.create_table(
        "poll_cursor",
        sa.Column("id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_acknowledged_id", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("id = 1", name="ck_poll_cursor_single_row"),
    )
    op.execute("INSERT INTO poll_cursor (id, last_acknowledged_id) VALUES (1, 0)")

    op.create_table(
        "poll_event_metrics",
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("event_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("event_type"),
    )


def downgrade() -> None:
    op.drop_table("poll_event_metrics")
    op.drop_table("poll_cursor")

    op.drop_index("idx_poll_events_type_status", table_name="poll_events")
    op.drop_index("idx_poll_events_processing_status", table_name="poll_events")
    op.drop_index("idx_poll_events_tx_hash", table_name="poll_events")
    op.drop_index("idx_poll_events_token_id", table_name="poll_events")
    op.drop_index("idx_poll_events_name", table_name="poll_events")
    op.drop_index("idx_poll_events_event_type", table_name="poll_events")
    op.drop_index("idx_poll_events_event_id", table_name="poll_events")
    op.drop_table("poll_events")
