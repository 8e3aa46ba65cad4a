"""Link completion records to the ledger entries written for them."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261016_0003"
down_revision = "20261009_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "completed_tasks",
        sa.Column("completion_key", sa.String(), nullable=True),
    )
    op.add_column(
        "ledger_entries",
        sa.Column("completion_key", sa.String(), nullable=True),
    )
    op.create_index(
        "ix_completed_tasks_completion_key",
        "completed_tasks",
        ["completion_key"],
    )
    op.create_index(
        "ix_ledger_entries_completion_key",
        "ledger_entries",
        ["completion_key"],
    )


def downgrade() -> None:
    op.drop_index("ix_ledger_entries_completion_key", table_name="ledger_entries")
    op.drop_index("ix_completed_tasks_completion_key", table_name="completed_tasks")
    # SQLite drops columns only through a table rebuild.
    with op.batch_alter_table("ledger_entries") as batch:
        batch.drop_column("completion_key")
    with op.batch_alter_table("completed_tasks") as batch:
        batch.drop_column("completion_key")
