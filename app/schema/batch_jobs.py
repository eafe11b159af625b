from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


class BatchJob(Base):
  __tablename__ = "batch_jobs"
  __table_args__ = (Index("ix_batch_jobs_status_last_processed", "status", "last_processed_at"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  display_name: Mapped[str] = mapped_column(String, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  uploader_email: Mapped[str | None] = mapped_column(String, nullable=True)
  force_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  notes: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  analyze_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
  structure_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
  response_schema: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  analyze_job_name: Mapped[str | None] = mapped_column(String, nullable=True)
  analyze_mode: Mapped[str | None] = mapped_column(String, nullable=True)
  analyze_model: Mapped[str | None] = mapped_column(String, nullable=True)
  analyze_fallback_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  analyze_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  analyze_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  analyze_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  structure_job_name: Mapped[str | None] = mapped_column(String, nullable=True)
  structure_mode: Mapped[str | None] = mapped_column(String, nullable=True)
  structure_model: Mapped[str | None] = mapped_column(String, nullable=True)
  structure_fallback_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  structure_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  structure_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  structure_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  ingest_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  ingest_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  ingest_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  estimated_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  total_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  group_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  last_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

  groups: Mapped[list[BatchGroup]] = relationship(back_populates="job", cascade="all, delete-orphan", order_by="BatchGroup.order", lazy="selectin")


class BatchGroup(Base):
  __tablename__ = "batch_groups"
  __table_args__ = (UniqueConstraint("job_id", "order", name="ux_batch_groups_job_order"), UniqueConstraint("job_id", "key", name="ux_batch_groups_job_key"))

  id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
  key: Mapped[str] = mapped_column(String, nullable=False)
  order: Mapped[int] = mapped_column(Integer, nullable=False)
  municipality: Mapped[str | None] = mapped_column(String, nullable=True)
  state: Mapped[str | None] = mapped_column(String, nullable=True)
  position: Mapped[str | None] = mapped_column(String, nullable=True)
  rows: Mapped[list] = mapped_column(JSONB, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  analyze_text: Mapped[str | None] = mapped_column(Text, nullable=True)
  analyze_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  analyze_token_estimate: Mapped[int | None] = mapped_column(Integer, nullable=True)
  analyze_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  structure_text: Mapped[str | None] = mapped_column(Text, nullable=True)
  structure_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  structured: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  structure_token_estimate: Mapped[int | None] = mapped_column(Integer, nullable=True)
  structure_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  ingest_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

  job: Mapped[BatchJob] = relationship(back_populates="groups")


class IngestedElection(Base):
  __tablename__ = "ingested_elections"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
  title: Mapped[str] = mapped_column(String, nullable=False)
  election_type: Mapped[str | None] = mapped_column(String, nullable=True)
  date: Mapped[str | None] = mapped_column(String, nullable=True)
  city: Mapped[str | None] = mapped_column(String, nullable=True)
  state: Mapped[str | None] = mapped_column(String, nullable=True)
  candidate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
  hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
  uploaded_by: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
