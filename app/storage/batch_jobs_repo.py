"""Storage interface for batch jobs and groups."""

from __future__ import annotations

from typing import Any, Protocol

from app.batch.admission import ActiveUsage, AdmissionDecision, AdmissionLimits
from app.batch.models import BatchJobRecord, BatchJobStatus, GroupUpdate


class BatchJobsRepository(Protocol):
  """Repository contract for batch job persistence.

  Every status change goes through `transition`, which is a compare-and-set on
  the job's current status so two workers cannot advance the same job twice.
  """

  async def create_job_admitted(self, record: BatchJobRecord, *, limits: AdmissionLimits) -> AdmissionDecision:
    """Evaluate admission and insert the job with its groups in one atomic step."""

  async def active_usage(self) -> ActiveUsage:
    """Count active jobs and sum their estimated tokens."""

  async def get_job(self, job_id: str) -> BatchJobRecord | None:
    """Fetch a job with its groups ordered by `order`."""

  async def list_jobs_by_status(self, status: BatchJobStatus, *, limit: int) -> list[BatchJobRecord]:
    """Return up to `limit` jobs in `status`, least recently processed first."""

  async def transition(self, job_id: str, *, expected: BatchJobStatus, status: BatchJobStatus, fields: dict[str, Any] | None = None, group_updates: list[GroupUpdate] | None = None) -> BatchJobRecord:
    """Move a job from `expected` to `status`, applying job and group fields atomically.

    Raises InvalidTransitionError when the job is not in `expected`, and
    BatchJobNotFoundError when it does not exist.
    """

  async def touch(self, job_id: str, *, expected: BatchJobStatus, fields: dict[str, Any] | None = None) -> BatchJobRecord:
    """Update bookkeeping fields without changing status; same precondition as `transition`."""
