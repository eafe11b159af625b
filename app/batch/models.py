"""Domain models for batch jobs and their groups."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Final, Literal

TransportMode = Literal["inline", "file"]
Stage = Literal["analyze", "structure", "ingest"]


class BatchJobStatus(str, Enum):
  """Job-level lifecycle states."""

  PENDING_ANALYZE = "PENDING_ANALYZE"
  ANALYZE_SUBMITTED = "ANALYZE_SUBMITTED"
  ANALYZE_COMPLETED = "ANALYZE_COMPLETED"
  STRUCTURE_SUBMITTED = "STRUCTURE_SUBMITTED"
  STRUCTURE_COMPLETED = "STRUCTURE_COMPLETED"
  INGEST_PENDING = "INGEST_PENDING"
  INGEST_RUNNING = "INGEST_RUNNING"
  COMPLETED = "COMPLETED"
  FAILED = "FAILED"


class BatchGroupStatus(str, Enum):
  """Group-level lifecycle states; each group fails independently."""

  PENDING = "PENDING"
  ANALYZE_RUNNING = "ANALYZE_RUNNING"
  ANALYZE_COMPLETED = "ANALYZE_COMPLETED"
  ANALYZE_FAILED = "ANALYZE_FAILED"
  STRUCTURE_RUNNING = "STRUCTURE_RUNNING"
  STRUCTURE_COMPLETED = "STRUCTURE_COMPLETED"
  STRUCTURE_FAILED = "STRUCTURE_FAILED"
  INGEST_COMPLETED = "INGEST_COMPLETED"


TERMINAL_JOB_STATUSES: Final[frozenset[BatchJobStatus]] = frozenset({BatchJobStatus.COMPLETED, BatchJobStatus.FAILED})
# Every job that still occupies provider capacity or awaits ingestion counts against admission.
ACTIVE_JOB_STATUSES: Final[tuple[BatchJobStatus, ...]] = tuple(status for status in BatchJobStatus if status not in TERMINAL_JOB_STATUSES)


@dataclass
class PreparedGroup:
  """Canonical group produced by the preparer, before persistence."""

  key: str
  order: int
  rows: list[Any]
  municipality: str | None = None
  state: str | None = None
  position: str | None = None

  @property
  def row_count(self) -> int:
    return len(self.rows)


@dataclass
class BatchGroupRecord:
  """Persisted group row."""

  id: str
  job_id: str
  key: str
  order: int
  rows: list[Any]
  status: BatchGroupStatus = BatchGroupStatus.PENDING
  municipality: str | None = None
  state: str | None = None
  position: str | None = None
  analyze_text: str | None = None
  analyze_error: str | None = None
  analyze_token_estimate: int | None = None
  analyze_completed_at: datetime | None = None
  structure_text: str | None = None
  structure_error: str | None = None
  structured: dict[str, Any] | None = None
  structure_token_estimate: int | None = None
  structure_completed_at: datetime | None = None
  ingest_completed_at: datetime | None = None

  def to_prepared(self) -> PreparedGroup:
    return PreparedGroup(key=self.key, order=self.order, rows=list(self.rows), municipality=self.municipality, state=self.state, position=self.position)


@dataclass
class BatchJobRecord:
  """Persisted job row with its groups ordered by `order`."""

  id: str
  display_name: str
  status: BatchJobStatus
  created_at: datetime
  updated_at: datetime
  estimated_tokens: int = 0
  total_rows: int = 0
  group_count: int = 0
  uploader_email: str | None = None
  force_hidden: bool = False
  notes: dict[str, Any] | None = None
  analyze_prompt: str | None = None
  structure_prompt: str | None = None
  response_schema: dict[str, Any] | None = None
  analyze_job_name: str | None = None
  analyze_mode: TransportMode | None = None
  analyze_model: str | None = None
  analyze_fallback_used: bool = False
  analyze_submitted_at: datetime | None = None
  analyze_completed_at: datetime | None = None
  analyze_error: str | None = None
  structure_job_name: str | None = None
  structure_mode: TransportMode | None = None
  structure_model: str | None = None
  structure_fallback_used: bool = False
  structure_submitted_at: datetime | None = None
  structure_completed_at: datetime | None = None
  structure_error: str | None = None
  ingest_requested_at: datetime | None = None
  ingest_completed_at: datetime | None = None
  ingest_error: str | None = None
  last_processed_at: datetime | None = None
  groups: list[BatchGroupRecord] = field(default_factory=list)


@dataclass(frozen=True)
class BatchHandle:
  """What the transport returns; enough to resume polling after a restart."""

  job_name: str
  mode: TransportMode
  key_map: dict[str, int] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class BatchResult:
  """One reconciled result slot, aligned with the submitted keys."""

  text: str | None = None
  error: str | None = None

  @property
  def is_empty(self) -> bool:
    return self.text is None and self.error is None


@dataclass(frozen=True)
class GroupUpdate:
  """Partial update applied to one group by id."""

  group_id: str
  status: BatchGroupStatus
  fields: dict[str, Any] = field(default_factory=dict)
