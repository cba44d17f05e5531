"""Create entry processing and analysis tables.

Revision ID: 20261017_entry_processing
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "20261017_entry_processing"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "entry_processing",
        sa.Column("entry_id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column(
            "state",
            sa.String(length=32),
            nullable=False,
            server_default="created",
        ),
        sa.Column(
            "attempt_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("image_storage_key", sa.Text(), nullable=True),
        sa.Column("image_uri", sa.Text(), nullable=True),
        sa.Column("image_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "metadata",
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
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "state IN ('created', 'analyzing_text', 'text_analyzed', "
            "'generating_image', 'completed', 'failed')",
            name="ck_entry_processing_state",
        ),
        sa.CheckConstraint(
            "attempt_count >= 0", name="ck_entry_processing_attempt_count"
        ),
    )
    op.create_index(
        "ix_entry_processing_state", "entry_processing", ["state"], unique=False
    )

    op.create_table(
        "entry_analyses",
        sa.Column("analysis_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "entry_id",
            sa.String(length=36),
            sa.ForeignKey("entry_processing.entry_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column(
            "tags",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "entities",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            "emotions",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("interpretation", sa.Text(), nullable=True),
        sa.Column("model_version", sa.String(length=128), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("entry_id", name="uq_entry_analyses_entry_id"),
    )


def downgrade() -> None:
    op.drop_table("entry_analyses")
    op.drop_index("ix_entry_processing_state", table_name="entry_processing")
    op.drop_table("entry_processing")
