"""Add reconciliation tick history."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261009_0002"
down_revision = "20261002_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sync_ticks",
        sa.Column("tick_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rollover_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("quarantined_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revoked_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reward_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_awarded", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("tick_id"),
    )
    op.create_index("ix_sync_ticks_status", "sync_ticks", ["status"])
    op.create_index("ix_sync_ticks_started_at", "sync_ticks", ["started_at"])


def downgrade() -> None:
    op.drop_index("ix_sync_ticks_started_at", table_name="sync_ticks")
    op.drop_index("ix_sync_ticks_status", table_name="sync_ticks")
    op.drop_table("sync_ticks")
