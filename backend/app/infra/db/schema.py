"""SQLAlchemy Core table definitions for the processing pipeline.

The Alembic revisions under ``backend/migrations`` create the same tables on
PostgreSQL; these definitions are what the gateways bind against and what the
SQLite-backed tests create directly.
"""

from __future__ import annotations

import sqlalchemy as sa

METADATA = sa.MetaData()

ENTRY_PROCESSING = sa.Table(
    "entry_processing",
    METADATA,
    sa.Column("entry_id", sa.String(length=36), primary_key=True),
    sa.Column("user_id", sa.String(length=64), nullable=True),
    sa.Column("content", sa.Text(), nullable=False),
    sa.Column("state", sa.String(length=32), nullable=False),
    sa.Column("attempt_count", sa.Integer(), nullable=False, default=0),
    sa.Column("failure_reason", sa.Text(), nullable=True),
    sa.Column("image_storage_key", sa.Text(), nullable=True),
    sa.Column("image_uri", sa.Text(), nullable=True),
    sa.Column("image_generated_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("metadata", sa.JSON(), nullable=False, default=dict),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
)

ENTRY_ANALYSES = sa.Table(
    "entry_analyses",
    METADATA,
    sa.Column("analysis_id", sa.String(length=36), primary_key=True),
    sa.Column(
        "entry_id",
        sa.String(length=36),
        sa.ForeignKey("entry_processing.entry_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    sa.Column("summary", sa.Text(), nullable=False),
    sa.Column("tags", sa.JSON(), nullable=False, default=list),
    sa.Column("entities", sa.JSON(), nullable=False, default=list),
    sa.Column("emotions", sa.JSON(), nullable=False, default=dict),
    sa.Column("interpretation", sa.Text(), nullable=True),
    sa.Column("model_version", sa.String(length=128), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

SCHEDULED_TASKS = sa.Table(
    "scheduled_tasks",
    METADATA,
    sa.Column("task_id", sa.String(length=36), primary_key=True),
    sa.Column("task_kind", sa.String(length=32), nullable=False),
    sa.Column("entry_id", sa.String(length=36), nullable=False),
    sa.Column("not_before", sa.DateTime(timezone=True), nullable=False),
    sa.Column("attempt_number", sa.Integer(), nullable=False, default=1),
    sa.Column("claimed_by", sa.String(length=128), nullable=True),
    sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.UniqueConstraint("task_kind", "entry_id", name="uq_scheduled_tasks_kind_entry"),
    sa.Index("ix_scheduled_tasks_not_before", "not_before"),
)

PIPELINE_OUTBOX = sa.Table(
    "pipeline_outbox",
    METADATA,
    sa.Column("event_id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("event_type", sa.String(length=64), nullable=False),
    sa.Column("entry_id", sa.String(length=36), nullable=False),
    sa.Column("payload", sa.JSON(), nullable=False, default=dict),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_pipeline_outbox_undispatched", "dispatched_at", "event_id"),
)
