from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr
from pydantic.alias_generators import to_camel

from app.batch.models import BatchGroupRecord, BatchJobRecord
from app.batch.pipeline import BatchSubmission, BatchSubmissionResult
from app.batch.worker import TickSummary


class _CamelModel(BaseModel):
  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateBatchRequest(_CamelModel):
  """Request payload for a new bulk batch job."""

  # Left untyped so malformed groups surface as a pipeline 400 rather than a 422.
  groups: Any = None
  analyze_prompt: StrictStr | None = None
  structure_prompt: StrictStr | None = None
  response_schema: dict[str, Any] | None = None
  display_name: StrictStr | None = None
  uploader_email: StrictStr | None = None
  force_hidden: StrictBool = False
  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

  def to_submission(self) -> BatchSubmission:
    return BatchSubmission(
      groups=self.groups,
      analyze_prompt=self.analyze_prompt,
      structure_prompt=self.structure_prompt,
      response_schema=self.response_schema,
      display_name=self.display_name,
      uploader_email=self.uploader_email,
      force_hidden=self.force_hidden,
    )


class CreateBatchResponse(_CamelModel):
  """Response payload returned after a batch job is created."""

  job_id: str
  status: str
  analyze_job_name: str | None = None
  analyze_mode: str | None = None
  token_estimate: int
  group_count: int
  response_schema: dict[str, Any] = Field(serialization_alias="schema", validation_alias="schema")
  display_name: str
  mock: bool = False

  @classmethod
  def from_result(cls, result: BatchSubmissionResult) -> CreateBatchResponse:
    return cls(
      job_id=result.job_id,
      status=result.status.value,
      analyze_job_name=result.analyze_job_name,
      analyze_mode=result.analyze_mode,
      token_estimate=result.token_estimate,
      group_count=result.group_count,
      schema=result.response_schema,
      display_name=result.display_name,
      mock=result.mock,
    )


class BatchGroupView(_CamelModel):
  id: str
  key: str
  order: int
  status: str
  row_count: int
  municipality: str | None = None
  state: str | None = None
  position: str | None = None
  analyze_error: str | None = None
  analyze_token_estimate: int | None = None
  analyze_completed_at: datetime | None = None
  structure_error: str | None = None
  structured: dict[str, Any] | None = None
  structure_token_estimate: int | None = None
  structure_completed_at: datetime | None = None
  ingest_completed_at: datetime | None = None

  @classmethod
  def from_record(cls, group: BatchGroupRecord) -> BatchGroupView:
    return cls(
      id=group.id,
      key=group.key,
      order=group.order,
      status=group.status.value,
      row_count=len(group.rows),
      municipality=group.municipality,
      state=group.state,
      position=group.position,
      analyze_error=group.analyze_error,
      analyze_token_estimate=group.analyze_token_estimate,
      analyze_completed_at=group.analyze_completed_at,
      structure_error=group.structure_error,
      structured=group.structured,
      structure_token_estimate=group.structure_token_estimate,
      structure_completed_at=group.structure_completed_at,
      ingest_completed_at=group.ingest_completed_at,
    )


class BatchJobView(_CamelModel):
  """Status payload for a batch job and its ordered groups."""

  job_id: str
  display_name: str
  status: str
  created_at: datetime
  updated_at: datetime
  estimated_tokens: int
  total_rows: int
  group_count: int
  force_hidden: bool
  notes: dict[str, Any] | None = None
  analyze_job_name: str | None = None
  analyze_mode: str | None = None
  analyze_model: str | None = None
  analyze_fallback_used: bool = False
  analyze_submitted_at: datetime | None = None
  analyze_completed_at: datetime | None = None
  analyze_error: str | None = None
  structure_job_name: str | None = None
  structure_mode: str | None = None
  structure_model: str | None = None
  structure_fallback_used: bool = False
  structure_submitted_at: datetime | None = None
  structure_completed_at: datetime | None = None
  structure_error: str | None = None
  ingest_requested_at: datetime | None = None
  ingest_completed_at: datetime | None = None
  ingest_error: str | None = None
  last_processed_at: datetime | None = None
  groups: list[BatchGroupView] = Field(default_factory=list)

  @classmethod
  def from_record(cls, job: BatchJobRecord) -> BatchJobView:
    return cls(
      job_id=job.id,
      display_name=job.display_name,
      status=job.status.value,
      created_at=job.created_at,
      updated_at=job.updated_at,
      estimated_tokens=job.estimated_tokens,
      total_rows=job.total_rows,
      group_count=job.group_count,
      force_hidden=job.force_hidden,
      notes=job.notes,
      analyze_job_name=job.analyze_job_name,
      analyze_mode=job.analyze_mode,
      analyze_model=job.analyze_model,
      analyze_fallback_used=job.analyze_fallback_used,
      analyze_submitted_at=job.analyze_submitted_at,
      analyze_completed_at=job.analyze_completed_at,
      analyze_error=job.analyze_error,
      structure_job_name=job.structure_job_name,
      structure_mode=job.structure_mode,
      structure_model=job.structure_model,
      structure_fallback_used=job.structure_fallback_used,
      structure_submitted_at=job.structure_submitted_at,
      structure_completed_at=job.structure_completed_at,
      structure_error=job.structure_error,
      ingest_requested_at=job.ingest_requested_at,
      ingest_completed_at=job.ingest_completed_at,
      ingest_error=job.ingest_error,
      last_processed_at=job.last_processed_at,
      groups=[BatchGroupView.from_record(group) for group in job.groups],
    )


class TickSummaryResponse(_CamelModel):
  analyze_checked: int = 0
  analyze_completed: int = 0
  structure_started: int = 0
  structure_checked: int = 0
  structure_completed: int = 0
  ingest_queued: int = 0
  ingested: int = 0
  failed: int = 0
  deferred: int = 0
  skipped_reason: str | None = None
  errors: list[str] = Field(default_factory=list)

  @classmethod
  def from_summary(cls, summary: TickSummary) -> TickSummaryResponse:
    return cls(**asdict(summary))
