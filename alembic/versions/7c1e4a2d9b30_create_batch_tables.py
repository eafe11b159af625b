"""Create batch job, group, and ingested election tables.

Revision ID: 7c1e4a2d9b30
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from app.core.migration_guards import guarded_create_index, guarded_create_table, guarded_drop_index, guarded_drop_table

revision = "7c1e4a2d9b30"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  guarded_create_table(
    "batch_jobs",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("display_name", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("uploader_email", sa.String(), nullable=True),
    sa.Column("force_hidden", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    sa.Column("notes", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("analyze_prompt", sa.Text(), nullable=True),
    sa.Column("structure_prompt", sa.Text(), nullable=True),
    sa.Column("response_schema", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("analyze_job_name", sa.String(), nullable=True),
    sa.Column("analyze_mode", sa.String(), nullable=True),
    sa.Column("analyze_model", sa.String(), nullable=True),
    sa.Column("analyze_fallback_used", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    sa.Column("analyze_submitted_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("analyze_completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("analyze_error", sa.Text(), nullable=True),
    sa.Column("structure_job_name", sa.String(), nullable=True),
    sa.Column("structure_mode", sa.String(), nullable=True),
    sa.Column("structure_model", sa.String(), nullable=True),
    sa.Column("structure_fallback_used", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    sa.Column("structure_submitted_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("structure_completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("structure_error", sa.Text(), nullable=True),
    sa.Column("ingest_requested_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("ingest_completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("ingest_error", sa.Text(), nullable=True),
    sa.Column("estimated_tokens", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("total_rows", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("group_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("last_processed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  guarded_create_index(op.f("ix_batch_jobs_status"), "batch_jobs", ["status"], unique=False)
  guarded_create_index("ix_batch_jobs_status_last_processed", "batch_jobs", ["status", "last_processed_at"], unique=False)

  guarded_create_table(
    "batch_groups",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("key", sa.String(), nullable=False),
    sa.Column("order", sa.Integer(), nullable=False),
    sa.Column("municipality", sa.String(), nullable=True),
    sa.Column("state", sa.String(), nullable=True),
    sa.Column("position", sa.String(), nullable=True),
    sa.Column("rows", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("analyze_text", sa.Text(), nullable=True),
    sa.Column("analyze_error", sa.Text(), nullable=True),
    sa.Column("analyze_token_estimate", sa.Integer(), nullable=True),
    sa.Column("analyze_completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("structure_text", sa.Text(), nullable=True),
    sa.Column("structure_error", sa.Text(), nullable=True),
    sa.Column("structured", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("structure_token_estimate", sa.Integer(), nullable=True),
    sa.Column("structure_completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("ingest_completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.ForeignKeyConstraint(["job_id"], ["batch_jobs.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("job_id", "order", name="ux_batch_groups_job_order"),
    sa.UniqueConstraint("job_id", "key", name="ux_batch_groups_job_key"),
  )
  guarded_create_index(op.f("ix_batch_groups_job_id"), "batch_groups", ["job_id"], unique=False)
  guarded_create_index(op.f("ix_batch_groups_status"), "batch_groups", ["status"], unique=False)

  guarded_create_table(
    "ingested_elections",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(), nullable=False),
    sa.Column("election_type", sa.String(), nullable=True),
    sa.Column("date", sa.String(), nullable=True),
    sa.Column("city", sa.String(), nullable=True),
    sa.Column("state", sa.String(), nullable=True),
    sa.Column("candidate_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
    sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("hidden", sa.Boolean(), server_default=sa.text("true"), nullable=False),
    sa.Column("uploaded_by", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["job_id"], ["batch_jobs.id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  guarded_create_index(op.f("ix_ingested_elections_job_id"), "ingested_elections", ["job_id"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  guarded_drop_index(op.f("ix_ingested_elections_job_id"), table_name="ingested_elections")
  guarded_drop_table("ingested_elections")
  guarded_drop_index(op.f("ix_batch_groups_status"), table_name="batch_groups")
  guarded_drop_index(op.f("ix_batch_groups_job_id"), table_name="batch_groups")
  guarded_drop_table("batch_groups")
  guarded_drop_index("ix_batch_jobs_status_last_processed", table_name="batch_jobs")
  guarded_drop_index(op.f("ix_batch_jobs_status"), table_name="batch_jobs")
  guarded_drop_table("batch_jobs")
