"""Create the durable task table and the pipeline outbox.

Revision ID: 20261017_tasks_outbox
Revises: 20261017_entry_processing
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "20261017_tasks_outbox"
down_revision = "20261017_entry_processing"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scheduled_tasks",
        sa.Column("task_id", sa.String(length=36), primary_key=True),
        sa.Column("task_kind", sa.String(length=32), nullable=False),
        sa.Column("entry_id", sa.String(length=36), nullable=False),
        sa.Column("not_before", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "attempt_number", sa.Integer(), nullable=False, server_default="1"
        ),
        sa.Column("claimed_by", sa.String(length=128), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "task_kind", "entry_id", name="uq_scheduled_tasks_kind_entry"
        ),
    )
    op.create_index(
        "ix_scheduled_tasks_not_before",
        "scheduled_tasks",
        ["not_before"],
        unique=False,
    )

    op.create_table(
        "pipeline_outbox",
        sa.Column("event_id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("entry_id", sa.String(length=36), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_pipeline_outbox_undispatched",
        "pipeline_outbox",
        ["dispatched_at", "event_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_pipeline_outbox_undispatched", table_name="pipeline_outbox")
    op.drop_table("pipeline_outbox")
    op.drop_index("ix_scheduled_tasks_not_before", table_name="scheduled_tasks")
    op.drop_table("scheduled_tasks")
